"""Tests for GA4Service against a MockTransport GA4 API."""

import asyncio
import json
from datetime import date

import httpx
import pytest

from app.services.exceptions import IntegrationNotConnectedError, VendorApiError
from app.services.ga4_client import GA4Service, classify_channel, format_change, format_ga4_date, property_resource
from app.services.oauth_client import Vendor
from app.services.token_service import AuthorizedClient


class _StaticTokenManager:
    def __init__(self, account_id="123456"):
        self.account_id = account_id

    async def get_client(self, client_id):
        return AuthorizedClient(client_id=str(client_id), vendor=Vendor.ga4, access_token="tok", account_id=self.account_id)


def _row(dims, metrics):
    return {
        "dimensionValues": [{"value": d} for d in dims],
        "metricValues": [{"value": str(m)} for m in metrics],
    }


REPORTS = {
    ("sessions",): {"rows": [
        _row(["Organic Search"], [100]),
        _row(["Paid Search"], [40]),
        _row(["Direct"], [30]),
        _row(["Organic Social"], [20]),
        _row(["Email"], [10]),
    ]},
    ("activeUsers", "totalUsers", "newUsers", "eventCount"): {"rows": [_row([], [80, 90, 50, 1200])]},
    ("bounceRate", "averageSessionDuration", "screenPageViewsPerSession", "engagedSessions", "engagementRate"): {
        "rows": [_row([], ["0.45", "62.5", "2.1", 120, "0.6"])]
    },
    ("newUsers", "activeUsers"): {"rows": [_row(["20240101"], [5, 9]), _row(["20240102"], [7, 11])]},
    ("engagedSessions",): {"rows": [_row(["Organic Search"], [70]), _row(["Paid Search"], [30])]},
    ("conversions", "conversionRate"): {"rows": [_row([], [12, "0.06"])]},
    ("conversions",): {"rows": [_row(["purchase"], [4]), _row(["generate_lead"], [3])]},
}


def _report_handler(failing=()):
    def handler(request):
        body = json.loads(request.content)
        key = tuple(m["name"] for m in body["metrics"])
        assert request.url.path == "/v1beta/properties/123456:runReport"
        if key in failing:
            return httpx.Response(500, json={"error": {"message": "internal"}})
        return httpx.Response(200, json=REPORTS[key])

    return handler


def test_helpers():
    assert property_resource("123") == "properties/123"
    assert property_resource("properties/123") == "properties/123"
    assert format_ga4_date("20240131") == "2024-01-31"
    assert format_ga4_date("(other)") == "(other)"
    assert classify_channel("Paid Search") == "paid"
    assert classify_channel("Organic Search") == "organic"
    assert classify_channel("Organic Social") == "referral"
    assert classify_channel("Direct") == "direct"
    assert classify_channel("Email") is None


def test_fetch_traffic_assembles_summary(mock_http):
    service = GA4Service(_StaticTokenManager(), http_client=mock_http(_report_handler()))

    traffic = asyncio.run(service.fetch_traffic("client-1", date(2024, 1, 1), date(2024, 1, 2)))

    assert traffic["total_sessions"] == 200
    assert traffic["organic_sessions"] == 100
    assert traffic["paid_sessions"] == 40
    assert traffic["direct_sessions"] == 30
    assert traffic["referral_sessions"] == 20
    assert traffic["organic_search_engaged_sessions"] == 70
    assert traffic["active_users"] == 80
    assert traffic["new_users"] == 50
    assert traffic["event_count"] == 1200
    assert traffic["bounce_rate"] == pytest.approx(0.45)
    assert traffic["engaged_sessions"] == 120
    assert traffic["conversions"] == 12
    assert traffic["key_events"] == 7
    assert traffic["new_users_trend"] == [{"date": "2024-01-01", "value": 5}, {"date": "2024-01-02", "value": 7}]
    assert traffic["active_users_trend"][1] == {"date": "2024-01-02", "value": 11}


def test_single_failed_report_degrades_to_zeros(mock_http):
    handler = _report_handler(failing={("bounceRate", "averageSessionDuration", "screenPageViewsPerSession", "engagedSessions", "engagementRate")})
    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))

    traffic = asyncio.run(service.fetch_traffic("client-1", date(2024, 1, 1), date(2024, 1, 2)))

    assert traffic["total_sessions"] == 200
    assert traffic["bounce_rate"] == 0.0
    assert traffic["engaged_sessions"] == 0


def test_all_core_reports_failing_raises(mock_http):
    service = GA4Service(
        _StaticTokenManager(),
        http_client=mock_http(lambda request: httpx.Response(403, json={"error": {"message": "denied"}})),
    )
    with pytest.raises(VendorApiError):
        asyncio.run(service.fetch_traffic("client-1", date(2024, 1, 1), date(2024, 1, 2)))


def test_missing_property_is_not_connected(mock_http):
    calls = []
    service = GA4Service(_StaticTokenManager(account_id=None), http_client=mock_http(lambda r: calls.append(r)))

    with pytest.raises(IntegrationNotConnectedError) as exc_info:
        asyncio.run(service.fetch_traffic("client-1", date(2024, 1, 1), date(2024, 1, 2)))
    assert "GA4 property not configured" in str(exc_info.value)
    assert calls == []


def test_list_properties_follows_account_pages(mock_http):
    def handler(request):
        if request.url.path == "/v1beta/accounts":
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(200, json={"accounts": [{"name": "accounts/2", "displayName": "Beta"}]})
            return httpx.Response(200, json={"accounts": [{"name": "accounts/1", "displayName": "Acme"}], "nextPageToken": "p2"})
        parent = request.url.params["filter"]
        if parent == "parent:accounts/1":
            return httpx.Response(200, json={"properties": [{"name": "properties/111", "displayName": "Website"}]})
        return httpx.Response(200, json={"properties": [{"name": "properties/222", "displayName": "Shop"}]})

    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))
    properties = asyncio.run(service.list_properties("client-1"))

    assert properties == [
        {"property_id": "111", "display_name": "Acme - Website", "account": "accounts/1"},
        {"property_id": "222", "display_name": "Beta - Shop", "account": "accounts/2"},
    ]


def test_list_properties_account_error_raises(mock_http):
    service = GA4Service(
        _StaticTokenManager(),
        http_client=mock_http(lambda request: httpx.Response(401, json={"error": {"message": "expired"}})),
    )
    with pytest.raises(VendorApiError) as exc_info:
        asyncio.run(service.list_properties("client-1"))
    assert exc_info.value.http_status == 401


def test_list_properties_follows_property_pages(mock_http):
    def handler(request):
        if request.url.path == "/v1beta/accounts":
            return httpx.Response(200, json={"accounts": [{"name": "accounts/1", "displayName": "Acme"}]})
        if request.url.params.get("pageToken") == "next":
            return httpx.Response(200, json={"properties": [{"name": "properties/112", "displayName": "Blog"}]})
        return httpx.Response(200, json={"properties": [{"name": "properties/111", "displayName": "Website"}], "nextPageToken": "next"})

    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))
    properties = asyncio.run(service.list_properties("client-1"))

    assert [p["property_id"] for p in properties] == ["111", "112"]


def test_list_properties_skips_failing_account(mock_http):
    def handler(request):
        if request.url.path == "/v1beta/accounts":
            return httpx.Response(200, json={"accounts": [{"name": "accounts/1", "displayName": "Acme"}, {"name": "accounts/2"}]})
        if request.url.params["filter"] == "parent:accounts/1":
            raise httpx.ConnectError("reset", request=request)
        return httpx.Response(200, json={"properties": [{"name": "properties/222", "displayName": "Shop"}]})

    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))
    properties = asyncio.run(service.list_properties("client-1"))

    assert properties == [{"property_id": "222", "display_name": "accounts/2 - Shop", "account": "accounts/2"}]


def test_list_properties_transport_failure_raises_vendor_error(mock_http):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))
    with pytest.raises(VendorApiError) as exc_info:
        asyncio.run(service.list_properties("client-1"))
    assert exc_info.value.status_code == 502


def test_non_json_report_body_counts_as_failed_report(mock_http):
    service = GA4Service(_StaticTokenManager(), http_client=mock_http(lambda request: httpx.Response(200, text="<html>")))

    assert asyncio.run(service.fetch_top_events("client-1", date(2024, 1, 1), date(2024, 1, 2))) == []
    with pytest.raises(VendorApiError):
        asyncio.run(service.fetch_traffic("client-1", date(2024, 1, 1), date(2024, 1, 2)))


# --- Secondary widgets -------------------------------------------------------


def test_fetch_events_folds_names_and_compares_previous_period(mock_http):
    periods = {
        "2024-01-11": [("page_view", 100), ("form_submit", 5), ("generate_lead", 3), ("scroll", 40)],
        "2024-01-02": [("page_view", 80), ("form_submit", 4), ("scroll", 50)],
    }
    seen_ranges = []

    def handler(request):
        body = json.loads(request.content)
        date_range = body["dateRanges"][0]
        seen_ranges.append((date_range["startDate"], date_range["endDate"]))
        rows = [_row([name], [count]) for name, count in periods[date_range["startDate"]]]
        return httpx.Response(200, json={"rows": rows})

    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))
    result = asyncio.run(service.fetch_events("client-1", date(2024, 1, 11), date(2024, 1, 20)))

    assert seen_ranges == [("2024-01-11", "2024-01-20"), ("2024-01-02", "2024-01-11")]
    assert result["events"] == [
        {"name": "Page Views", "count": 100, "change": "+25%"},
        {"name": "scroll", "count": 40, "change": "-20%"},
        {"name": "Form Submissions", "count": 8, "change": "+100%"},
    ]


def test_fetch_events_keeps_current_counts_when_previous_period_fails(mock_http):
    def handler(request):
        body = json.loads(request.content)
        if body["dateRanges"][0]["startDate"] == "2024-01-11":
            return httpx.Response(200, json={"rows": [_row(["file_download"], [6])]})
        return httpx.Response(500, json={"error": {"message": "internal"}})

    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))
    result = asyncio.run(service.fetch_events("client-1", date(2024, 1, 11), date(2024, 1, 20)))

    assert result == {"events": [{"name": "Downloads", "count": 6, "change": "+100%"}]}


def test_format_change():
    assert format_change(150, 100) == "+50%"
    assert format_change(100, 100) == "+0%"
    assert format_change(60, 100) == "-40%"
    assert format_change(5, 0) == "+100%"
    assert format_change(0, 0) is None


def test_fetch_top_events_ranks_by_count(mock_http):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"rows": [_row(["page_view"], [100]), _row([""], [5]), _row(["click"], [0])]})

    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))
    events = asyncio.run(service.fetch_top_events("client-1", date(2024, 1, 1), date(2024, 1, 31), limit=5))

    assert events == [{"name": "page_view", "count": 100}]
    assert bodies[0]["limit"] == 5
    assert bodies[0]["orderBys"] == [{"metric": {"metricName": "eventCount"}, "desc": True}]


def test_fetch_visitor_sources_labels_blank_source(mock_http):
    def handler(request):
        body = json.loads(request.content)
        assert body["dimensions"] == [{"name": "sessionManualSource"}]
        return httpx.Response(200, json={"rows": [_row(["google"], [50]), _row([""], [7]), _row(["bing"], [0])]})

    service = GA4Service(_StaticTokenManager(), http_client=mock_http(handler))
    sources = asyncio.run(service.fetch_visitor_sources("client-1", date(2024, 1, 1), date(2024, 1, 31)))

    assert sources == [{"source": "google", "users": 50}, {"source": "(not set)", "users": 7}]


def test_fetch_engagement_summary(mock_http):
    service = GA4Service(
        _StaticTokenManager(),
        http_client=mock_http(lambda request: httpx.Response(200, json={"rows": [_row([], [120, "0.61"])]})),
    )
    summary = asyncio.run(service.fetch_engagement_summary("client-1", date(2024, 1, 1), date(2024, 1, 31)))

    assert summary == {"engaged_sessions": 120, "engagement_rate": pytest.approx(0.61)}


def test_secondary_widgets_without_property_make_no_calls(mock_http):
    calls = []
    service = GA4Service(_StaticTokenManager(account_id=None), http_client=mock_http(lambda r: calls.append(r)))
    start, end = date(2024, 1, 1), date(2024, 1, 31)

    assert asyncio.run(service.fetch_events("client-1", start, end)) == {"events": []}
    assert asyncio.run(service.fetch_top_events("client-1", start, end)) == []
    assert asyncio.run(service.fetch_visitor_sources("client-1", start, end)) == []
    assert asyncio.run(service.fetch_engagement_summary("client-1", start, end)) is None
    assert calls == []
