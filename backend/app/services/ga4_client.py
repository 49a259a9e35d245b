"""GA4 Data / Admin API client.

WHAT:
    Builds the client dashboard's traffic summary from GA4 `runReport`
    calls, the secondary widgets (events with period-over-period change,
    top events, visitor sources, engagement summary) and lists the GA4
    properties a connected Google account can see.

WHY:
    - The five core reports have no ordering dependency, so they are
      issued together with `asyncio.gather` and joined before assembly.
    - One failing report must not blank the whole dashboard: each report
      is run "safely" (None on failure) and only a total loss of the core
      reports is surfaced as an error. Secondary widgets degrade to empty
      results the same way.

REFERENCES:
    - https://developers.google.com/analytics/devguides/reporting/data/v1/rest/v1beta/properties/runReport
    - https://developers.google.com/analytics/devguides/config/admin/v1/rest/v1beta/properties/list
    - app/services/token_service.py (TokenRefreshManager for Vendor.ga4)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.services.exceptions import IntegrationNotConnectedError, VendorApiError
from app.services.token_service import TokenRefreshManager
from app.services.vendor_errors import describe_http_failure, extract_vendor_error_message
from app.utils.http import async_http_client

logger = logging.getLogger(__name__)

GA4_DATA_API = "https://analyticsdata.googleapis.com/v1beta"
GA4_ADMIN_API = "https://analyticsadmin.googleapis.com/v1beta"

# Raw GA4 event names folded into one dashboard label
EVENT_DISPLAY_NAMES = {
    "form_submit": "Form Submissions",
    "form_submission": "Form Submissions",
    "generate_lead": "Form Submissions",
    "video_start": "Video Plays",
    "video_progress": "Video Plays",
    "video_complete": "Video Plays",
    "file_download": "Downloads",
    "download": "Downloads",
    "page_view": "Page Views",
}


def property_resource(property_id: str) -> str:
    """GA4 expects `properties/<id>`; stored ids are bare."""
    return property_id if property_id.startswith("properties/") else f"properties/{property_id}"


def format_ga4_date(value: str) -> str:
    """YYYYMMDD to YYYY-MM-DD; anything else is returned unchanged."""
    if value and len(value) == 8 and value.isdigit():
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return value


def classify_channel(channel: str) -> Optional[str]:
    """Bucket a sessionDefaultChannelGroup value.

    "paid" is checked first so "Paid Search" never counts as organic.
    """
    value = (channel or "").lower().strip()
    if "paid" in value:
        return "paid"
    if "organic search" in value:
        return "organic"
    if "direct" in value:
        return "direct"
    if "referral" in value or "social" in value:
        return "referral"
    return None


def _metric(report: Optional[dict], index: int, row: int = 0) -> str:
    try:
        return report["rows"][row]["metricValues"][index]["value"] or "0"
    except (KeyError, IndexError, TypeError):
        return "0"


def _int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _rows(report: Optional[dict]) -> List[dict]:
    if not report:
        return []
    return report.get("rows") or []


def _dimension(row: dict, index: int = 0) -> str:
    try:
        return row["dimensionValues"][index]["value"] or ""
    except (KeyError, IndexError, TypeError):
        return ""


def _row_metric(row: dict, index: int = 0) -> str:
    try:
        return row["metricValues"][index]["value"] or "0"
    except (KeyError, IndexError, TypeError):
        return "0"


class GA4Service:
    """GA4 reports for one client's selected property.

    Args:
        token_manager: TokenRefreshManager for Vendor.ga4.
        http_client: Shared AsyncClient (tests pass a MockTransport client).
    """

    def __init__(self, token_manager: TokenRefreshManager, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.token_manager = token_manager
        self._http_client = http_client

    async def _safe_run_report(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        property_name: str,
        body: Dict[str, Any],
        report_name: str,
    ) -> Optional[dict]:
        try:
            response = await http.post(
                f"{GA4_DATA_API}/{property_name}:runReport",
                headers={"Authorization": f"Bearer {access_token}"},
                json=body,
            )
        except httpx.HTTPError as exc:
            logger.warning("[GA4] %s request failed for %s: %s", report_name, property_name, exc)
            return None
        if not response.is_success:
            logger.warning(
                "[GA4] %s request failed for %s: %s",
                report_name, property_name,
                describe_http_failure("GA4", response.status_code, extract_vendor_error_message(response.text)),
            )
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("[GA4] %s returned a non-JSON body for %s", report_name, property_name)
            return None

    async def _selected_property(self, client_id: str) -> Tuple[str, Optional[str]]:
        """Access token plus `properties/<id>`, or None when no property is selected."""
        authorized = await self.token_manager.get_client(client_id)
        if not authorized.account_id:
            return authorized.access_token, None
        return authorized.access_token, property_resource(authorized.account_id)

    async def fetch_traffic(self, client_id: str, start: date, end: date) -> Dict[str, Any]:
        """Traffic summary for the date range.

        Raises:
            IntegrationNotConnectedError: no property selected.
            VendorApiError: sessions, users, engagement and trend reports all failed.
        """
        authorized = await self.token_manager.get_client(client_id)
        if not authorized.account_id:
            raise IntegrationNotConnectedError("GA4 property not configured for this client", vendor="GA4")

        property_name = property_resource(authorized.account_id)
        date_ranges = [{"startDate": start.isoformat(), "endDate": end.isoformat()}]
        token = authorized.access_token

        def report(metrics: List[str], dimensions: Optional[List[str]] = None, **extra: Any) -> Dict[str, Any]:
            body: Dict[str, Any] = {"dateRanges": date_ranges, "metrics": [{"name": m} for m in metrics]}
            if dimensions:
                body["dimensions"] = [{"name": d} for d in dimensions]
            body.update(extra)
            return body

        async with async_http_client(self._http_client) as http:
            sessions, users, engagement, trend, engaged_by_channel = await asyncio.gather(
                self._safe_run_report(http, token, property_name, report(["sessions"], ["sessionDefaultChannelGroup"]), "sessions"),
                self._safe_run_report(
                    http, token, property_name,
                    report(["activeUsers", "totalUsers", "newUsers", "eventCount"]), "users",
                ),
                self._safe_run_report(
                    http, token, property_name,
                    report(["bounceRate", "averageSessionDuration", "screenPageViewsPerSession", "engagedSessions", "engagementRate"]),
                    "engagement",
                ),
                self._safe_run_report(
                    http, token, property_name,
                    report(["newUsers", "activeUsers"], ["date"], orderBys=[{"dimension": {"dimensionName": "date"}}]),
                    "trend",
                ),
                self._safe_run_report(
                    http, token, property_name, report(["engagedSessions"], ["sessionDefaultChannelGroup"]), "engaged_sessions_by_channel",
                ),
            )

            if sessions is None and users is None and engagement is None and trend is None:
                raise VendorApiError(
                    f"Failed to fetch GA4 data for {property_name}. Check that the property id is correct "
                    "and the connected account has access.",
                    vendor="GA4",
                )

            conversions = await self._safe_run_report(
                http, token, property_name, report(["conversions", "conversionRate"]), "conversions",
            )
            key_events = await self._safe_run_report(
                http, token, property_name, report(["conversions"], ["eventName"], limit=50), "key_events",
            )

        return self._assemble(sessions, users, engagement, trend, engaged_by_channel, conversions, key_events)

    @staticmethod
    def _assemble(
        sessions: Optional[dict],
        users: Optional[dict],
        engagement: Optional[dict],
        trend: Optional[dict],
        engaged_by_channel: Optional[dict],
        conversions: Optional[dict],
        key_events: Optional[dict],
    ) -> Dict[str, Any]:
        by_channel = {"paid": 0, "organic": 0, "direct": 0, "referral": 0}
        total_sessions = 0
        for row in _rows(sessions):
            count = _int(_row_metric(row))
            total_sessions += count
            bucket = classify_channel(_dimension(row))
            if bucket:
                by_channel[bucket] += count

        organic_engaged = 0
        for row in _rows(engaged_by_channel):
            if classify_channel(_dimension(row)) == "organic":
                organic_engaged += _int(_row_metric(row))

        conversions_total = _int(_metric(conversions, 0))
        key_event_total = sum(_int(_row_metric(row)) for row in _rows(key_events))
        if key_event_total == 0 and conversions_total > 0:
            key_event_total = conversions_total

        new_users_trend = []
        active_users_trend = []
        for row in _rows(trend):
            day = format_ga4_date(_dimension(row))
            new_users_trend.append({"date": day, "value": _int(_row_metric(row, 0))})
            active_users_trend.append({"date": day, "value": _int(_row_metric(row, 1))})

        return {
            "total_sessions": total_sessions,
            "organic_sessions": by_channel["organic"],
            "direct_sessions": by_channel["direct"],
            "referral_sessions": by_channel["referral"],
            "paid_sessions": by_channel["paid"],
            "organic_search_engaged_sessions": organic_engaged,
            "active_users": _int(_metric(users, 0)),
            "total_users": _int(_metric(users, 1)),
            "new_users": _int(_metric(users, 2)),
            "event_count": _int(_metric(users, 3)),
            "bounce_rate": _float(_metric(engagement, 0)),
            "avg_session_duration": _float(_metric(engagement, 1)),
            "pages_per_session": _float(_metric(engagement, 2)),
            "engaged_sessions": _int(_metric(engagement, 3)),
            "engagement_rate": _float(_metric(engagement, 4)),
            "conversions": conversions_total,
            "conversion_rate": _float(_metric(conversions, 1)),
            "key_events": key_event_total,
            "new_users_trend": new_users_trend,
            "active_users_trend": active_users_trend,
        }

    async def fetch_engagement_summary(self, client_id: str, start: date, end: date) -> Optional[Dict[str, Any]]:
        """Engaged sessions and engagement rate only; None when unavailable."""
        token, property_name = await self._selected_property(client_id)
        if property_name is None:
            return None

        body = {
            "dateRanges": [{"startDate": start.isoformat(), "endDate": end.isoformat()}],
            "metrics": [{"name": "engagedSessions"}, {"name": "engagementRate"}],
        }
        async with async_http_client(self._http_client) as http:
            report = await self._safe_run_report(http, token, property_name, body, "engagement_summary")
        if report is None:
            return None

        rate_rows = _rows(report)
        rate = None
        if rate_rows:
            try:
                rate = float(rate_rows[0]["metricValues"][1]["value"])
            except (KeyError, IndexError, TypeError, ValueError):
                rate = None
        return {"engaged_sessions": _int(_metric(report, 0)), "engagement_rate": rate}

    async def _event_counts(
        self, http: httpx.AsyncClient, token: str, property_name: str, start: date, end: date, report_name: str
    ) -> Optional[Dict[str, int]]:
        body = {
            "dateRanges": [{"startDate": start.isoformat(), "endDate": end.isoformat()}],
            "dimensions": [{"name": "eventName"}],
            "metrics": [{"name": "eventCount"}],
            "orderBys": [{"metric": {"metricName": "eventCount"}, "desc": True}],
            "limit": 100,
        }
        report = await self._safe_run_report(http, token, property_name, body, report_name)
        if report is None:
            return None
        counts: Dict[str, int] = {}
        for row in _rows(report):
            name = _dimension(row)
            count = _int(_row_metric(row))
            if name and count > 0:
                counts[name] = count
        return counts

    async def fetch_events(self, client_id: str, start: date, end: date) -> Dict[str, Any]:
        """Top 10 dashboard events with the change against the preceding period.

        Known GA4 event names are folded into display labels
        (EVENT_DISPLAY_NAMES) before counting. The previous period has the
        same length and ends on `start`. `change` is "+N%" / "-N%", "+100%"
        for events absent from the previous period, None when both are 0.
        """
        token, property_name = await self._selected_property(client_id)
        if property_name is None:
            return {"events": []}

        days = (end - start).days
        previous_start = start - timedelta(days=days)

        async with async_http_client(self._http_client) as http:
            current = await self._event_counts(http, token, property_name, start, end, "events")
            if current is None:
                return {"events": []}
            previous = await self._event_counts(http, token, property_name, previous_start, start, "events_previous")

        totals: Dict[str, Dict[str, int]] = {}
        for counts, key in ((current, "count"), (previous or {}, "previous_count")):
            for name, count in counts.items():
                label = EVENT_DISPLAY_NAMES.get(name.lower(), name)
                entry = totals.setdefault(label, {"count": 0, "previous_count": 0})
                entry[key] += count

        events = []
        for label, entry in totals.items():
            if entry["count"] <= 0:
                continue
            events.append({
                "name": label,
                "count": entry["count"],
                "change": format_change(entry["count"], entry["previous_count"]),
            })
        events.sort(key=lambda e: e["count"], reverse=True)
        return {"events": events[:10]}

    async def _ranked_dimension(
        self,
        client_id: str,
        start: date,
        end: date,
        dimension: str,
        metric: str,
        limit: int,
        report_name: str,
    ) -> List[Tuple[str, int]]:
        token, property_name = await self._selected_property(client_id)
        if property_name is None:
            return []
        body = {
            "dateRanges": [{"startDate": start.isoformat(), "endDate": end.isoformat()}],
            "dimensions": [{"name": dimension}],
            "metrics": [{"name": metric}],
            "orderBys": [{"metric": {"metricName": metric}, "desc": True}],
            "limit": limit,
        }
        async with async_http_client(self._http_client) as http:
            report = await self._safe_run_report(http, token, property_name, body, report_name)
        return [(_dimension(row), _int(_row_metric(row))) for row in _rows(report)]

    async def fetch_top_events(self, client_id: str, start: date, end: date, limit: int = 10) -> List[Dict[str, Any]]:
        """Raw GA4 event names ranked by eventCount."""
        ranked = await self._ranked_dimension(client_id, start, end, "eventName", "eventCount", limit, "top_events")
        return [{"name": name, "count": count} for name, count in ranked if name and count > 0]

    async def fetch_visitor_sources(self, client_id: str, start: date, end: date, limit: int = 10) -> List[Dict[str, Any]]:
        """Active users per session source; a blank source is reported as "(not set)"."""
        ranked = await self._ranked_dimension(
            client_id, start, end, "sessionManualSource", "activeUsers", limit, "visitor_sources"
        )
        return [{"source": source or "(not set)", "users": users} for source, users in ranked if users > 0]

    async def _admin_get(self, http: httpx.AsyncClient, path: str, headers: Dict[str, str], params: Dict[str, Any]) -> dict:
        """GET an Admin API page; transport, HTTP and decode failures raise VendorApiError."""
        try:
            response = await http.get(f"{GA4_ADMIN_API}/{path}", headers=headers, params=params)
        except httpx.HTTPError as exc:
            raise VendorApiError(f"GA4 Admin API request failed: {exc}", vendor="GA4") from exc
        if not response.is_success:
            raise VendorApiError(
                describe_http_failure("GA4", response.status_code, extract_vendor_error_message(response.text)),
                vendor="GA4",
                http_status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise VendorApiError("GA4 Admin API returned a non-JSON response", vendor="GA4", http_status=response.status_code) from exc

    async def _paged(self, http: httpx.AsyncClient, path: str, key: str, headers: Dict[str, str], params: Dict[str, Any]) -> List[dict]:
        items: List[dict] = []
        page_token: Optional[str] = None
        while True:
            page_params = dict(params, pageSize=200)
            if page_token:
                page_params["pageToken"] = page_token
            payload = await self._admin_get(http, path, headers, page_params)
            items.extend(payload.get(key) or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                return items

    async def list_properties(self, client_id: str) -> List[Dict[str, str]]:
        """GA4 properties visible to the connected account, labelled "Account - Property".

        A failing account listing raises; a failing per-account property
        listing only drops that account's properties.
        """
        authorized = await self.token_manager.get_client(client_id)
        headers = {"Authorization": f"Bearer {authorized.access_token}"}

        async with async_http_client(self._http_client) as http:
            accounts = await self._paged(http, "accounts", "accounts", headers, {})

            async def properties_for(account: dict) -> List[Dict[str, str]]:
                account_name = account.get("name", "")
                try:
                    properties = await self._paged(
                        http, "properties", "properties", headers, {"filter": f"parent:{account_name}"}
                    )
                except VendorApiError as exc:
                    logger.warning("[GA4] Listing properties for %s failed: %s", account_name, exc)
                    return []
                label = account.get("displayName") or account_name
                return [
                    {
                        "property_id": prop.get("name", "").split("/", 1)[-1],
                        "display_name": f"{label} - {prop.get('displayName') or prop.get('name', '')}",
                        "account": account_name,
                    }
                    for prop in properties
                ]

            per_account = await asyncio.gather(*(properties_for(account) for account in accounts))

        return [prop for props in per_account for prop in props]


def format_change(count: int, previous: int) -> Optional[str]:
    """Signed whole-percent change, e.g. "+25%" or "-40%"."""
    if previous > 0:
        percent = (count - previous) / previous * 100
        return f"{'+' if percent >= 0 else ''}{percent:.0f}%"
    if count > 0:
        return "+100%"
    return None
