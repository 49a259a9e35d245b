"""Google Ads client service abstraction.

WHAT:
    `GAdsClient` issues GAQL queries against the Google Ads REST
    searchStream endpoint, resolving the `login-customer-id` header for
    accounts managed through a manager (MCC) account.
    `GoogleAdsService` builds the dashboard reports (campaigns, ad groups,
    keywords, conversions) on top of it.

WHY:
    - Separation of concerns: keep vendor HTTP details out of routers.
    - The API gives no way to know in advance whether the selected account
      is top-level or a managed child, so the executor walks the (small)
      list of accessible ids as header candidates, one at a time, and stops
      at the first answer that is not a permission error.
    - Testability: the httpx client and token manager are injected.

REFERENCES:
    - https://developers.google.com/google-ads/api/rest/common/search
    - https://developers.google.com/google-ads/api/docs/concepts/call-structure#cid
    - app/services/google_ads_normalizer.py (row parsing)
    - app/services/vendor_errors.py (response classification)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from app.services.exceptions import (
    GoogleAdsPermissionError,
    IntegrationNotConnectedError,
    OAuthConfigurationError,
    VendorApiError,
)
from app.services.google_ads_normalizer import AdsRow, normalize_rows
from app.services.token_service import TokenRefreshManager, normalize_customer_id
from app.services.vendor_errors import (
    VendorErrorKind,
    classify_google_ads_response,
    describe_http_failure,
    extract_vendor_error_message,
)
from app.utils.env import get_env
from app.utils.http import async_http_client

logger = logging.getLogger(__name__)

GOOGLE_ADS_API_BASE = "https://googleads.googleapis.com"
DEVELOPER_TOKEN_ENV = "GOOGLE_ADS_DEVELOPER_TOKEN"
_DIGITS = re.compile(r"^\d+$")


@dataclass
class SearchStreamResult:
    """Successful searchStream response plus its body text."""

    response: httpx.Response
    raw_text: str
    login_customer_id: Optional[str] = None


def _transport_error(exc: httpx.HTTPError) -> VendorApiError:
    """Connect/timeout failures surface like any other vendor failure (502)."""
    logger.error("[GOOGLE_ADS] Request failed: %s", exc)
    return VendorApiError(f"Google Ads API request failed: {exc}", vendor="Google Ads")


class GAdsClient:
    """Google Ads REST query executor.

    Args:
        http_client: Shared AsyncClient; a short-lived one is used per call otherwise.
        developer_token: Overrides GOOGLE_ADS_DEVELOPER_TOKEN (tests).
    """

    api_version = "v16"

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, developer_token: Optional[str] = None) -> None:
        self._http_client = http_client
        self._developer_token_override = developer_token

    def _developer_token(self) -> str:
        token = self._developer_token_override or get_env(DEVELOPER_TOKEN_ENV)
        if not token:
            raise OAuthConfigurationError(
                "Google Ads",
                [DEVELOPER_TOKEN_ENV],
                message=(
                    "Google Ads API requires a developer token. Set GOOGLE_ADS_DEVELOPER_TOKEN "
                    "(Google Ads: Tools & Settings > API Center)."
                ),
            )
        return token

    def _headers(self, access_token: str, developer_token: str, login_customer_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "developer-token": developer_token,
            "Content-Type": "application/json",
        }
        if login_customer_id:
            headers["login-customer-id"] = login_customer_id
        return headers

    def _url(self, path: str) -> str:
        return f"{GOOGLE_ADS_API_BASE}/{self.api_version}/{path}"

    def _error_for(self, response: httpx.Response) -> VendorApiError:
        message = extract_vendor_error_message(response.text)
        return VendorApiError(
            describe_http_failure("Google Ads", response.status_code, message),
            vendor="Google Ads",
            http_status=response.status_code,
        )

    async def list_accessible_customers(self, access_token: str) -> List[str]:
        """Customer ids (digits only) reachable with these credentials."""
        developer_token = self._developer_token()
        async with async_http_client(self._http_client) as http:
            try:
                response = await http.get(
                    self._url("customers:listAccessibleCustomers"),
                    headers=self._headers(access_token, developer_token),
                )
            except httpx.HTTPError as exc:
                raise _transport_error(exc) from exc
        if not response.is_success:
            raise self._error_for(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise VendorApiError(
                "Google Ads API returned a non-JSON response", vendor="Google Ads", http_status=response.status_code
            ) from exc
        names = (payload.get("resourceNames") if isinstance(payload, dict) else None) or []
        return [name.split("/", 1)[-1] for name in names if name]

    async def _post_search(
        self,
        http: httpx.AsyncClient,
        customer_id: str,
        access_token: str,
        developer_token: str,
        query: str,
        login_customer_id: Optional[str] = None,
    ) -> httpx.Response:
        try:
            return await http.post(
                self._url(f"customers/{customer_id}/googleAds:searchStream"),
                headers=self._headers(access_token, developer_token, login_customer_id),
                json={"query": query},
            )
        except httpx.HTTPError as exc:
            raise _transport_error(exc) from exc

    async def search_stream(self, client_id: str, customer_id: str, access_token: str, query: str) -> SearchStreamResult:
        """Run `query` for `customer_id`, resolving login-customer-id as needed.

        Order of attempts:
            1. If the target is accessible alongside other ids, each other id
               as login-customer-id, stopping at the first non-permission answer.
            2. A plain request without the header.
            3. On a permission error, each accessible id not tried yet.

        Raises:
            OAuthConfigurationError: developer token missing (before any request).
            GoogleAdsPermissionError: every candidate failed with a permission error.
            VendorApiError: any other non-2xx response or a transport failure.
        """
        developer_token = self._developer_token()
        target = normalize_customer_id(customer_id)

        try:
            accessible = await self.list_accessible_customers(access_token)
        except VendorApiError as exc:
            logger.warning("[GOOGLE_ADS] Could not list accessible customers for client %s: %s", client_id, exc)
            accessible = []

        tried: List[str] = []
        last_permission_response: Optional[httpx.Response] = None

        async with async_http_client(self._http_client) as http:

            async def attempt(login_id: Optional[str]) -> Optional[SearchStreamResult]:
                """Result on success, None on a permission error, raise otherwise."""
                nonlocal last_permission_response
                response = await self._post_search(http, target, access_token, developer_token, query, login_id)
                if response.is_success:
                    if login_id:
                        logger.info("[GOOGLE_ADS] Customer %s reached via login-customer-id %s", target, login_id)
                    return SearchStreamResult(response=response, raw_text=response.text, login_customer_id=login_id)
                kind = classify_google_ads_response(response.status_code, response.text)
                if kind != VendorErrorKind.permission_topology:
                    logger.error("[GOOGLE_ADS] searchStream failed (%s) for client %s", response.status_code, client_id)
                    raise self._error_for(response)
                last_permission_response = response
                return None

            if target in accessible and len(accessible) > 1:
                for candidate in accessible:
                    if candidate == target:
                        continue
                    tried.append(candidate)
                    result = await attempt(candidate)
                    if result is not None:
                        return result

            result = await attempt(None)
            if result is not None:
                return result

            for candidate in accessible:
                if candidate in tried:
                    continue
                tried.append(candidate)
                result = await attempt(candidate)
                if result is not None:
                    return result

        detail = extract_vendor_error_message(last_permission_response.text) if last_permission_response is not None else ""
        logger.error(
            "[GOOGLE_ADS] Permission denied for customer %s after %d login-customer-id candidates",
            target, len(tried),
        )
        raise GoogleAdsPermissionError(
            "Google Ads API access denied (403): the connected account cannot access customer "
            f"{target}. If it is managed through a manager account, reconnect with a user of that manager. {detail}".strip(),
            attempted_login_ids=tried,
            http_status=last_permission_response.status_code if last_permission_response is not None else 403,
        )


# =============================================================================
# REPORTS
# =============================================================================

def _date_range(start: date, end: date) -> str:
    return f"segments.date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'"


def _require_numeric_id(value: Optional[str], name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if not _DIGITS.match(str(value)):
        raise ValueError(f"{name} must be numeric")
    return str(value)


def _summary(clicks: int, impressions: int, cost: float, conversions: float) -> Dict[str, float]:
    return {
        "clicks": clicks,
        "impressions": impressions,
        "cost": cost,
        "conversions": conversions,
        "conversion_rate": (conversions / clicks) * 100 if clicks else 0.0,
        "avg_cpc": cost / clicks if clicks else 0.0,
        "cost_per_conversion": cost / conversions if conversions else 0.0,
    }


@dataclass
class _Bucket:
    """Running totals for one campaign / ad group / keyword."""

    info: Dict[str, Any]
    clicks: int = 0
    impressions: int = 0
    cost: float = 0.0
    conversions: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)

    def add(self, row: AdsRow) -> None:
        self.clicks += row.clicks
        self.impressions += row.impressions
        self.cost += row.cost
        self.conversions += row.conversions

    def as_dict(self) -> Dict[str, Any]:
        out = dict(self.info)
        out.update(
            clicks=self.clicks,
            impressions=self.impressions,
            cost=self.cost,
            conversions=self.conversions,
            avg_cpc=self.cost / self.clicks if self.clicks else 0.0,
            ctr=self.clicks / self.impressions if self.impressions else 0.0,
        )
        out.update(self.extra)
        return out


def _totals(rows: List[AdsRow]) -> Dict[str, float]:
    return _summary(
        sum(r.clicks for r in rows),
        sum(r.impressions for r in rows),
        sum(r.cost for r in rows),
        sum(r.conversions for r in rows),
    )


class GoogleAdsService:
    """Dashboard reports for one client's Google Ads account.

    Args:
        token_manager: TokenRefreshManager for Vendor.google_ads.
        executor: GAdsClient issuing the searchStream calls.
    """

    def __init__(self, token_manager: TokenRefreshManager, executor: Optional[GAdsClient] = None) -> None:
        self.token_manager = token_manager
        self.executor = executor or GAdsClient()

    async def _run(self, client_id: str, query: str) -> List[AdsRow]:
        authorized = await self.token_manager.get_client(client_id)
        if not authorized.account_id:
            raise IntegrationNotConnectedError(
                "Google Ads customer id is not selected for this client", vendor="Google Ads"
            )
        result = await self.executor.search_stream(client_id, authorized.account_id, authorized.access_token, query)
        return normalize_rows(result.raw_text)

    async def list_customers(self, client_id: str) -> List[Dict[str, str]]:
        """Accessible customer ids for the account picker."""
        authorized = await self.token_manager.get_client(client_id)
        ids = await self.executor.list_accessible_customers(authorized.access_token)
        return [{"customer_id": cid, "display_id": _format_customer_id(cid)} for cid in ids]

    async def fetch_campaigns(self, client_id: str, start: date, end: date) -> Dict[str, Any]:
        query = (
            "SELECT campaign.id, campaign.name, campaign.status, "
            "metrics.clicks, metrics.impressions, metrics.cost_micros, metrics.conversions, "
            "metrics.conversions_value, metrics.average_cpc, metrics.ctr, metrics.search_impression_share "
            f"FROM campaign WHERE {_date_range(start, end)} ORDER BY metrics.clicks DESC"
        )
        rows = await self._run(client_id, query)

        buckets: Dict[str, _Bucket] = {}
        for row in rows:
            key = row.campaign_id or "unknown"
            bucket = buckets.get(key)
            if bucket is None:
                bucket = _Bucket(info={
                    "id": key,
                    "name": row.campaign_name or "Unnamed Campaign",
                    "status": row.campaign_status or "UNKNOWN",
                })
                buckets[key] = bucket
            bucket.add(row)

        campaigns = sorted((b.as_dict() for b in buckets.values()), key=lambda c: c["clicks"], reverse=True)
        return {"campaigns": campaigns, "summary": _totals(rows)}

    async def fetch_ad_groups(
        self, client_id: str, start: date, end: date, campaign_id: Optional[str] = None
    ) -> Dict[str, Any]:
        campaign_id = _require_numeric_id(campaign_id, "campaign_id")
        where = _date_range(start, end)
        if campaign_id:
            where += f" AND campaign.id = {campaign_id}"
        query = (
            "SELECT ad_group.id, ad_group.name, ad_group.status, campaign.id, campaign.name, "
            "metrics.clicks, metrics.impressions, metrics.cost_micros, metrics.conversions, "
            "metrics.average_cpc, metrics.ctr "
            f"FROM ad_group WHERE {where} ORDER BY metrics.clicks DESC"
        )
        rows = await self._run(client_id, query)

        buckets: Dict[str, _Bucket] = {}
        for row in rows:
            key = row.ad_group_id or "unknown"
            bucket = buckets.get(key)
            if bucket is None:
                bucket = _Bucket(info={
                    "id": key,
                    "name": row.ad_group_name or "Unnamed Ad Group",
                    "status": row.ad_group_status or "UNKNOWN",
                    "campaign_id": row.campaign_id,
                    "campaign_name": row.campaign_name,
                })
                buckets[key] = bucket
            bucket.add(row)

        ad_groups = sorted((b.as_dict() for b in buckets.values()), key=lambda g: g["clicks"], reverse=True)
        return {"ad_groups": ad_groups, "summary": _totals(rows)}

    async def fetch_keywords(
        self,
        client_id: str,
        start: date,
        end: date,
        campaign_id: Optional[str] = None,
        ad_group_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        campaign_id = _require_numeric_id(campaign_id, "campaign_id")
        ad_group_id = _require_numeric_id(ad_group_id, "ad_group_id")
        where = f"{_date_range(start, end)} AND ad_group_criterion.type = 'KEYWORD'"
        if campaign_id:
            where += f" AND campaign.id = {campaign_id}"
        if ad_group_id:
            where += f" AND ad_group.id = {ad_group_id}"
        query = (
            "SELECT ad_group_criterion.keyword.text, ad_group_criterion.keyword.match_type, "
            "ad_group_criterion.status, ad_group.id, ad_group.name, campaign.id, campaign.name, "
            "metrics.clicks, metrics.impressions, metrics.cost_micros, metrics.conversions, "
            "metrics.average_cpc, metrics.ctr, metrics.search_impression_share "
            f"FROM keyword_view WHERE {where} ORDER BY metrics.clicks DESC LIMIT 1000"
        )
        rows = await self._run(client_id, query)

        buckets: Dict[str, _Bucket] = {}
        for row in rows:
            text = row.keyword_text or ""
            match_type = row.keyword_match_type or "UNKNOWN"
            key = f"{text}_{match_type}"
            bucket = buckets.get(key)
            if bucket is None:
                bucket = _Bucket(info={
                    "keyword": text,
                    "match_type": match_type,
                    "status": row.keyword_status or "UNKNOWN",
                    "ad_group_id": row.ad_group_id,
                    "ad_group_name": row.ad_group_name,
                    "campaign_id": row.campaign_id,
                    "campaign_name": row.campaign_name,
                }, extra={"impression_share": None})
                buckets[key] = bucket
            bucket.add(row)
            if row.search_impression_share is not None:
                bucket.extra["impression_share"] = row.search_impression_share

        keywords = sorted((b.as_dict() for b in buckets.values()), key=lambda k: k["clicks"], reverse=True)
        return {"keywords": keywords, "summary": _totals(rows)}

    async def fetch_conversions(self, client_id: str, start: date, end: date) -> Dict[str, Any]:
        query = (
            "SELECT segments.date, segments.conversion_action_name, "
            "metrics.conversions, metrics.conversions_value "
            f"FROM campaign WHERE {_date_range(start, end)} AND metrics.conversions > 0 "
            "ORDER BY segments.date DESC"
        )
        rows = await self._run(client_id, query)

        grouped: Dict[tuple, Dict[str, Any]] = {}
        for row in rows:
            action = row.conversion_action_name or "Unknown"
            key = (row.date or "", action)
            entry = grouped.setdefault(key, {"date": row.date, "conversion_action": action, "conversions": 0.0, "conversions_value": 0.0})
            entry["conversions"] += row.conversions
            entry["conversions_value"] += row.conversions_value

        conversions = sorted(grouped.values(), key=lambda c: c["conversions"], reverse=True)
        conversions.sort(key=lambda c: c["date"] or "", reverse=True)
        return {
            "conversions": conversions,
            "summary": {
                "total_conversions": sum(c["conversions"] for c in conversions),
                "total_conversions_value": sum(c["conversions_value"] for c in conversions),
            },
        }


def _format_customer_id(customer_id: str) -> str:
    """123-456-7890 display form for 10-digit ids."""
    if len(customer_id) == 10:
        return f"{customer_id[:3]}-{customer_id[3:6]}-{customer_id[6:]}"
    return customer_id
