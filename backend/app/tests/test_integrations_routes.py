"""HTTP tests for the integration and report endpoints.

WHAT:
    Tenant scoping, the OAuth consent/callback flow, account selection and
    the mapping of integration errors onto HTTP statuses.

REFERENCES:
    app/routers/integrations.py
    app/routers/reports.py
"""

from urllib.parse import parse_qs, urlparse

import pytest

from app.deps import get_google_ads_service, get_oauth_factory
from app.models import RoleEnum
from app.services.exceptions import (
    GoogleAdsPermissionError,
    IntegrationNotConnectedError,
    OAuthConfigurationError,
    OAuthTokenError,
    TokenRevokedError,
    VendorApiError,
)
from app.services.oauth_client import TokenGrant


@pytest.fixture
def oauth_app(app, fake_oauth):
    app.dependency_overrides[get_oauth_factory] = lambda: fake_oauth.factory
    return app


# --- Tenant scoping -----------------------------------------------------------------


def test_requires_authentication(client, test_client_record):
    response = client.get(f"/api/clients/{test_client_record.id}/google-ads/status")
    assert response.status_code == 401


def test_unknown_client_is_404(client, agency_user, auth_headers_for):
    response = client.get(
        "/api/clients/00000000-0000-0000-0000-000000000000/google-ads/status",
        headers=auth_headers_for(agency_user),
    )
    assert response.status_code == 404


def test_other_agency_cannot_see_client(client, make_user, other_agency, auth_headers_for, test_client_record):
    outsider = make_user(RoleEnum.agency, agency=other_agency)
    response = client.get(f"/api/clients/{test_client_record.id}/ga4/status", headers=auth_headers_for(outsider))
    assert response.status_code == 403


def test_portal_user_scoped_to_own_client(client, make_user, auth_headers_for, test_client_record, test_agency, test_db_session):
    from app.models import Client

    own = make_user(RoleEnum.user, client=test_client_record)
    other_client = Client(name="Other", agency_id=test_agency.id)
    test_db_session.add(other_client)
    test_db_session.commit()

    assert client.get(f"/api/clients/{test_client_record.id}/ga4/status", headers=auth_headers_for(own)).status_code == 200
    assert client.get(f"/api/clients/{other_client.id}/ga4/status", headers=auth_headers_for(own)).status_code == 403


def test_super_admin_sees_every_client(client, super_admin_user, auth_headers_for, test_client_record):
    response = client.get(f"/api/clients/{test_client_record.id}/google-ads/status", headers=auth_headers_for(super_admin_user))
    assert response.status_code == 200
    assert response.json()["state"] == "DISCONNECTED"
    assert response.json()["connected"] is False


# --- OAuth flow ----------------------------------------------------------------------


def test_auth_url_encodes_client_and_popup(client, agency_user, auth_headers_for, test_client_record):
    response = client.get(
        f"/api/clients/{test_client_record.id}/google-ads/auth-url",
        params={"popup": "true"},
        headers=auth_headers_for(agency_user),
    )
    assert response.status_code == 200
    params = parse_qs(urlparse(response.json()["auth_url"]).query)
    assert params["state"] == [f"{test_client_record.id}|popup"]
    assert params["redirect_uri"] == ["http://api.test/api/clients/google-ads/callback"]


def test_auth_url_without_credentials_is_500(client, agency_user, auth_headers_for, test_client_record, monkeypatch):
    monkeypatch.delenv("GA4_CLIENT_SECRET")
    response = client.get(f"/api/clients/{test_client_record.id}/ga4/auth-url", headers=auth_headers_for(agency_user))
    assert response.status_code == 500
    assert "GA4_CLIENT_SECRET" in response.json()["detail"]


def test_callback_stores_tokens_and_redirects(oauth_app, client, fake_oauth, test_client_record, test_db_session):
    fake_oauth.grant = TokenGrant("at", "rt", "owner@example.com")

    response = client.get(
        "/api/clients/google-ads/callback",
        params={"code": "abc", "state": str(test_client_record.id)},
        follow_redirects=False,
    )

    assert response.status_code == 307
    assert response.headers["location"] == f"http://app.test/clients/{test_client_record.id}?google_ads=connected"
    assert fake_oauth.exchanged_codes == ["abc"]
    test_db_session.refresh(test_client_record)
    assert test_client_record.google_ads_refresh_token is not None
    assert test_client_record.google_ads_account_email == "owner@example.com"


def test_callback_popup_posts_message(oauth_app, client, fake_oauth, test_client_record):
    fake_oauth.grant = TokenGrant("at", "rt")

    response = client.get(
        "/api/clients/ga4/callback",
        params={"code": "abc", "state": f"{test_client_record.id}|popup"},
    )

    assert response.status_code == 200
    assert '"type": "ga4_oauth"' in response.text
    assert '"success": true' in response.text
    assert "http://app.test" in response.text


def test_callback_consent_denied(oauth_app, client, fake_oauth, test_client_record):
    response = client.get(
        "/api/clients/google-ads/callback",
        params={"error": "access_denied", "state": str(test_client_record.id)},
        follow_redirects=False,
    )
    query = parse_qs(urlparse(response.headers["location"]).query)
    assert query == {"google_ads": ["error"], "message": ["access_denied"]}
    assert fake_oauth.exchanged_codes == []


@pytest.mark.parametrize(
    "params, message",
    [
        ({"state": "x"}, "missing_code"),
        ({"code": "abc"}, "missing_state"),
        ({"code": "abc", "state": "not-a-client"}, "invalid_client"),
    ],
)
def test_callback_bad_requests(oauth_app, client, params, message):
    response = client.get("/api/clients/google-ads/callback", params=params, follow_redirects=False)
    assert parse_qs(urlparse(response.headers["location"]).query)["message"] == [message]


def test_callback_exchange_failure(oauth_app, client, fake_oauth, test_client_record):
    fake_oauth.exchange_error = OAuthTokenError("token endpoint returned 400: invalid_grant", http_status=400)

    response = client.get(
        "/api/clients/google-ads/callback",
        params={"code": "abc", "state": str(test_client_record.id)},
        follow_redirects=False,
    )
    assert parse_qs(urlparse(response.headers["location"]).query)["message"] == ["token_exchange_failed"]


def test_callback_without_oauth_config(app, client, test_client_record):
    def unconfigured(vendor, http_client=None):
        raise OAuthConfigurationError(vendor.display_name, ["GOOGLE_ADS_CLIENT_ID"])

    app.dependency_overrides[get_oauth_factory] = lambda: unconfigured
    response = client.get(
        "/api/clients/google-ads/callback",
        params={"code": "abc", "state": str(test_client_record.id)},
        follow_redirects=False,
    )
    assert parse_qs(urlparse(response.headers["location"]).query)["message"] == ["oauth_not_configured"]


def test_select_customer_completes_connection(client, agency_user, auth_headers_for, test_client_record, test_db_session):
    from app.security import encrypt_secret

    test_client_record.google_ads_refresh_token = encrypt_secret("rt", context="test")
    test_db_session.commit()

    response = client.post(
        f"/api/clients/{test_client_record.id}/google-ads/customer",
        json={"customer_id": "123-456-7890"},
        headers=auth_headers_for(agency_user),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "CONNECTED"
    assert body["account_id"] == "1234567890"


def test_select_empty_property_is_400(client, agency_user, auth_headers_for, test_client_record):
    response = client.post(
        f"/api/clients/{test_client_record.id}/ga4/property",
        json={"property_id": "   "},
        headers=auth_headers_for(agency_user),
    )
    assert response.status_code == 400


def test_disconnect(client, agency_user, auth_headers_for, test_client_record, connect_client, test_db_session):
    connect_client(test_client_record)

    response = client.post(f"/api/clients/{test_client_record.id}/google-ads/disconnect", headers=auth_headers_for(agency_user))

    assert response.json() == {"message": "Google Ads disconnected"}
    test_db_session.refresh(test_client_record)
    assert test_client_record.google_ads_refresh_token is None


# --- Reports: error mapping ------------------------------------------------------


class FailingAdsService:
    def __init__(self, error):
        self.error = error

    async def fetch_campaigns(self, client_id, start, end):
        raise self.error


@pytest.mark.parametrize(
    "error, status",
    [
        (IntegrationNotConnectedError("Google Ads is not connected for this client", vendor="Google Ads"), 400),
        (TokenRevokedError("Google Ads"), 401),
        (GoogleAdsPermissionError("denied", attempted_login_ids=["999"]), 403),
        (OAuthConfigurationError("Google Ads", ["GOOGLE_ADS_DEVELOPER_TOKEN"]), 500),
        (VendorApiError("Google Ads API error (500): boom", vendor="Google Ads", http_status=500), 502),
        (ValueError("campaign_id must be numeric"), 400),
    ],
)
def test_report_errors_map_to_status(app, client, agency_user, auth_headers_for, test_client_record, error, status):
    app.dependency_overrides[get_google_ads_service] = lambda: FailingAdsService(error)

    response = client.get(f"/api/clients/{test_client_record.id}/google-ads/campaigns", headers=auth_headers_for(agency_user))

    assert response.status_code == status
    assert response.json()["detail"] == str(error)


def test_revoked_token_message_asks_to_reconnect(app, client, agency_user, auth_headers_for, test_client_record):
    app.dependency_overrides[get_google_ads_service] = lambda: FailingAdsService(TokenRevokedError("Google Ads"))

    response = client.get(f"/api/clients/{test_client_record.id}/google-ads/campaigns", headers=auth_headers_for(agency_user))

    assert response.json()["detail"] == "Google Ads token expired or revoked. Please reconnect Google Ads."


def test_report_window_validation(client, agency_user, auth_headers_for, test_client_record):
    response = client.get(
        f"/api/clients/{test_client_record.id}/google-ads/campaigns",
        params={"start_date": "2024-02-01", "end_date": "2024-01-01"},
        headers=auth_headers_for(agency_user),
    )
    assert response.status_code == 400


def test_report_end_to_end_with_refresh(app, client, agency_user, auth_headers_for, test_client_record, connect_client, fake_oauth, mock_http):
    """Ads campaigns through the real service: refresh, then searchStream."""
    import httpx

    from app.deps import get_vendor_http_client

    connect_client(test_client_record, account_id="123")

    def ads_api(request):
        if request.url.path.endswith("customers:listAccessibleCustomers"):
            return httpx.Response(200, json={"resourceNames": ["customers/123"]})
        assert request.headers["Authorization"] == "Bearer access-new"
        return httpx.Response(200, json=[{"results": [{"campaign": {"id": "1", "name": "Brand"}, "metrics": {"clicks": "4"}}]}])

    app.dependency_overrides[get_oauth_factory] = lambda: fake_oauth.factory
    app.dependency_overrides[get_vendor_http_client] = lambda: mock_http(ads_api)

    response = client.get(
        f"/api/clients/{test_client_record.id}/google-ads/campaigns",
        params={"start_date": "2024-01-01", "end_date": "2024-01-31"},
        headers=auth_headers_for(agency_user),
    )

    assert response.status_code == 200
    assert response.json()["campaigns"][0]["clicks"] == 4
    assert fake_oauth.refresh_calls == ["refresh-1"]


def test_ads_transport_failure_is_502_json(app, client, agency_user, auth_headers_for, test_client_record, connect_client, fake_oauth, mock_http):
    import httpx

    from app.deps import get_vendor_http_client

    connect_client(test_client_record, account_id="123")

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    app.dependency_overrides[get_oauth_factory] = lambda: fake_oauth.factory
    app.dependency_overrides[get_vendor_http_client] = lambda: mock_http(unreachable)

    response = client.get(f"/api/clients/{test_client_record.id}/google-ads/campaigns", headers=auth_headers_for(agency_user))

    assert response.status_code == 502
    assert "Google Ads API request failed" in response.json()["detail"]


def test_ga4_properties_transport_failure_is_502_json(app, client, agency_user, auth_headers_for, test_client_record, connect_client, fake_oauth, mock_http):
    import httpx

    from app.deps import get_vendor_http_client
    from app.services.oauth_client import Vendor

    connect_client(test_client_record, vendor=Vendor.ga4, account_id="555")

    def unreachable(request):
        raise httpx.ReadTimeout("timed out", request=request)

    app.dependency_overrides[get_oauth_factory] = lambda: fake_oauth.factory
    app.dependency_overrides[get_vendor_http_client] = lambda: mock_http(unreachable)

    response = client.get(f"/api/clients/{test_client_record.id}/ga4/properties", headers=auth_headers_for(agency_user))

    assert response.status_code == 502
    assert "GA4 Admin API request failed" in response.json()["detail"]


class StubGA4Service:
    def __init__(self):
        self.calls = []

    async def fetch_events(self, client_id, start, end):
        self.calls.append(("events", start, end))
        return {"events": [{"name": "Page Views", "count": 10, "change": "+25%"}]}

    async def fetch_top_events(self, client_id, start, end, limit=10):
        self.calls.append(("top_events", limit))
        return [{"name": "page_view", "count": 10}]

    async def fetch_visitor_sources(self, client_id, start, end, limit=10):
        self.calls.append(("visitor_sources", limit))
        return [{"source": "google", "users": 4}]

    async def fetch_engagement_summary(self, client_id, start, end):
        return None


def test_ga4_widget_routes(app, client, agency_user, auth_headers_for, test_client_record):
    from datetime import date

    from app.deps import get_ga4_service

    stub = StubGA4Service()
    app.dependency_overrides[get_ga4_service] = lambda: stub
    base = f"/api/clients/{test_client_record.id}/ga4"
    headers = auth_headers_for(agency_user)

    events = client.get(f"{base}/events", params={"start_date": "2024-01-01", "end_date": "2024-01-31"}, headers=headers)
    top = client.get(f"{base}/top-events", params={"limit": 3}, headers=headers)
    sources = client.get(f"{base}/visitor-sources", headers=headers)
    engagement = client.get(f"{base}/engagement", headers=headers)

    assert events.json()["events"][0]["change"] == "+25%"
    assert top.json() == [{"name": "page_view", "count": 10}]
    assert sources.json() == [{"source": "google", "users": 4}]
    assert engagement.status_code == 200
    assert engagement.json() is None
    assert stub.calls[0] == ("events", date(2024, 1, 1), date(2024, 1, 31))
    assert ("top_events", 3) in stub.calls
    assert ("visitor_sources", 10) in stub.calls
    assert client.get(f"{base}/top-events", params={"limit": 0}, headers=headers).status_code == 422
