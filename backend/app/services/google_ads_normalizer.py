"""Google Ads searchStream response normalizer.

WHAT:
    Turns a raw searchStream body into a flat list of result rows, then maps
    each row into one canonical record (`AdsRow`) with money already in
    currency units.

WHY:
    searchStream bodies arrive as a single JSON object with `results`, as a
    JSON array of batches, or as newline-delimited batches when the body is
    read as text. Field names arrive camelCase from REST and snake_case from
    other paths. Downstream aggregation reads only `AdsRow`.

REFERENCES:
    - https://developers.google.com/google-ads/api/rest/reference/rest/v16/customers.googleAds/searchStream
    - app/services/google_ads_client.py (consumer)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = 1_000_000


def micros_to_units(value: Any) -> float:
    """Convert a micros amount (int, float or numeric string) to currency units."""
    return _to_float(value) / MICROS_PER_UNIT


def _to_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    return int(_to_float(value))


def _batch_results(batch: Any) -> List[dict]:
    if isinstance(batch, dict):
        results = batch.get("results") or []
        return [row for row in results if isinstance(row, dict)]
    if isinstance(batch, list):
        rows: List[dict] = []
        for item in batch:
            rows.extend(_batch_results(item))
        return rows
    return []


def parse_search_stream(raw_text: str) -> List[dict]:
    """Flatten a searchStream body into its result rows.

    Standard JSON is tried first; if that fails each line is parsed on its
    own and unparseable lines are skipped. A body where nothing parses
    yields an empty list rather than an error.
    """
    if not raw_text or not raw_text.strip():
        return []

    try:
        return _batch_results(json.loads(raw_text))
    except ValueError:
        pass

    rows: List[dict] = []
    skipped = 0
    for line in raw_text.splitlines():
        candidate = line.strip().rstrip(",")
        if not candidate or candidate in ("[", "]"):
            continue
        try:
            rows.extend(_batch_results(json.loads(candidate)))
        except ValueError:
            skipped += 1

    if skipped:
        logger.warning("[GOOGLE_ADS] Skipped %d unparseable searchStream lines", skipped)
    return rows


def _pick(source: Optional[dict], *names: str) -> Any:
    """First present value among alternative spellings of one field."""
    if not isinstance(source, dict):
        return None
    for name in names:
        if name in source and source[name] is not None:
            return source[name]
    return None


def _money_units(value: Any) -> float:
    """Money object ({"micros": n}) or plain micros number to units."""
    if isinstance(value, dict):
        return micros_to_units(value.get("micros"))
    return micros_to_units(value)


@dataclass
class AdsRow:
    """One searchStream result row in canonical shape."""

    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    campaign_status: Optional[str] = None
    ad_group_id: Optional[str] = None
    ad_group_name: Optional[str] = None
    ad_group_status: Optional[str] = None
    keyword_text: Optional[str] = None
    keyword_match_type: Optional[str] = None
    keyword_status: Optional[str] = None
    conversion_action_name: Optional[str] = None
    date: Optional[str] = None
    clicks: int = 0
    impressions: int = 0
    cost: float = 0.0
    conversions: float = 0.0
    conversions_value: float = 0.0
    average_cpc: float = 0.0
    ctr: float = 0.0
    search_impression_share: Optional[float] = None


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def normalize_row(row: Dict[str, Any]) -> AdsRow:
    """Map one raw result row (either casing) onto `AdsRow`."""
    campaign = _pick(row, "campaign") or {}
    ad_group = _pick(row, "adGroup", "ad_group") or {}
    criterion = _pick(row, "adGroupCriterion", "ad_group_criterion") or {}
    keyword = _pick(criterion, "keyword") or {}
    segments = _pick(row, "segments") or {}
    metrics = _pick(row, "metrics") or {}

    impression_share = _pick(metrics, "searchImpressionShare", "search_impression_share")

    return AdsRow(
        campaign_id=_str_or_none(_pick(campaign, "id")),
        campaign_name=_pick(campaign, "name"),
        campaign_status=_pick(campaign, "status"),
        ad_group_id=_str_or_none(_pick(ad_group, "id")),
        ad_group_name=_pick(ad_group, "name"),
        ad_group_status=_pick(ad_group, "status"),
        keyword_text=_pick(keyword, "text"),
        keyword_match_type=_pick(keyword, "matchType", "match_type"),
        keyword_status=_pick(criterion, "status"),
        conversion_action_name=_pick(segments, "conversionActionName", "conversion_action_name"),
        date=_str_or_none(_pick(segments, "date")),
        clicks=_to_int(_pick(metrics, "clicks")),
        impressions=_to_int(_pick(metrics, "impressions")),
        cost=micros_to_units(_pick(metrics, "costMicros", "cost_micros")),
        conversions=_to_float(_pick(metrics, "conversions")),
        conversions_value=_to_float(_pick(metrics, "conversionsValue", "conversions_value")),
        average_cpc=_money_units(_pick(metrics, "averageCpc", "average_cpc")),
        ctr=_to_float(_pick(metrics, "ctr")),
        search_impression_share=None if impression_share is None else _to_float(impression_share),
    )


def normalize_rows(raw_text: str) -> List[AdsRow]:
    return [normalize_row(row) for row in parse_search_stream(raw_text)]
