"""HTTP tests for the financial overview endpoints."""

import httpx
import pytest
import stripe

from app.deps import get_vendor_http_client
from app.models import RoleEnum
from app.services.mrr_service import get_stripe_gateway


class OnePageGateway:
    def list_active_subscriptions(self, starting_after=None):
        return {
            "data": [{
                "id": "sub_1",
                "customer": {"id": "cus_1", "email": "owner@acme.com"},
                "items": {"data": [{
                    "quantity": 1,
                    "price": {"unit_amount": 59700, "recurring": {"interval": "month"},
                              "product": {"name": "Growth", "metadata": {"tier": "growth"}}},
                }]},
            }],
            "has_more": False,
        }

    def list_events(self, event_type, created_gte, starting_after=None):
        return {"data": [], "has_more": False}


class BrokenGateway:
    def list_active_subscriptions(self, starting_after=None):
        raise stripe.APIConnectionError("Network error")

    def list_events(self, event_type, created_gte, starting_after=None):
        raise stripe.APIConnectionError("Network error")


@pytest.mark.parametrize("role", [RoleEnum.specialist, RoleEnum.user])
def test_mrr_breakdown_role_gate(client, make_user, auth_headers_for, test_agency, role):
    user = make_user(role, agency=test_agency)
    response = client.get("/api/financial/mrr-breakdown", headers=auth_headers_for(user))
    assert response.status_code == 403


def test_mrr_breakdown_unconfigured(client, agency_user, auth_headers_for):
    response = client.get("/api/financial/mrr-breakdown", headers=auth_headers_for(agency_user))

    assert response.status_code == 200
    assert response.json() == {
        "total_mrr": 0,
        "segments": [],
        "configured": False,
        "message": "Stripe is not configured. Set STRIPE_SECRET_KEY",
    }


def test_mrr_breakdown(app, client, make_user, auth_headers_for):
    app.dependency_overrides[get_stripe_gateway] = lambda: OnePageGateway()
    admin = make_user(RoleEnum.admin)

    response = client.get("/api/financial/mrr-breakdown", headers=auth_headers_for(admin))

    body = response.json()
    assert body["configured"] is True
    assert body["total_mrr"] == 597
    assert body["segments"] == [{
        "category": "platform_growth",
        "label": "Growth",
        "mrr": 597,
        "count": 1,
        "color": "#a855f7",
        "accounts": [{"customer_id": "cus_1", "customer_email": "owner@acme.com", "mrr": 597, "product_name": "Growth"}],
    }]


def test_mrr_breakdown_stripe_failure_is_500(app, client, agency_user, auth_headers_for):
    app.dependency_overrides[get_stripe_gateway] = lambda: BrokenGateway()
    response = client.get("/api/financial/mrr-breakdown", headers=auth_headers_for(agency_user))
    assert response.status_code == 500
    assert response.json()["detail"].startswith("Failed to fetch MRR breakdown")


def test_subscription_activity_unconfigured(client, super_admin_user, auth_headers_for):
    response = client.get("/api/financial/subscription-activity", headers=auth_headers_for(super_admin_user))
    assert response.json() == {
        "configured": False,
        "daily_data": [],
        "new_mrr_added": 0,
        "churned_mrr": 0,
        "net_change": 0,
        "message": "Stripe is not configured.",
    }


def test_subscription_activity(app, client, agency_user, auth_headers_for):
    app.dependency_overrides[get_stripe_gateway] = lambda: OnePageGateway()

    body = client.get("/api/financial/subscription-activity", headers=auth_headers_for(agency_user)).json()

    assert body["configured"] is True
    assert len(body["daily_data"]) == 30
    assert body["net_change"] == 0


def test_subscription_activity_stripe_failure_is_500(app, client, agency_user, auth_headers_for):
    app.dependency_overrides[get_stripe_gateway] = lambda: BrokenGateway()
    response = client.get("/api/financial/subscription-activity", headers=auth_headers_for(agency_user))
    assert response.status_code == 500


def test_dataforseo_usage_super_admin_only(client, agency_user, auth_headers_for):
    response = client.get("/api/financial/dataforseo-usage", headers=auth_headers_for(agency_user))
    assert response.status_code == 403
    assert response.json()["detail"] == "Access denied. Super Admin only."


def test_dataforseo_usage_unconfigured(client, super_admin_user, auth_headers_for):
    response = client.get("/api/financial/dataforseo-usage", headers=auth_headers_for(super_admin_user))
    assert response.status_code == 200
    assert response.json()["configured"] is False


def test_dataforseo_transport_failure_is_500(app, client, super_admin_user, auth_headers_for, monkeypatch, mock_http):
    monkeypatch.setenv("DATAFORSEO_BASE64", "dXNlcjpwYXNz")

    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    app.dependency_overrides[get_vendor_http_client] = lambda: mock_http(handler)

    response = client.get("/api/financial/dataforseo-usage", headers=auth_headers_for(super_admin_user))
    assert response.status_code == 500


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
