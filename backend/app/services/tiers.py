"""Subscription tier catalogue.

Tiers only carry capacity limits and a list price. Agency tiers include
white-label and the client portal; business tiers are a single dashboard
without either.
"""

from dataclasses import dataclass
from typing import Dict, Optional

AGENCY = "agency"
BUSINESS = "business"


@dataclass(frozen=True)
class TierConfig:
    id: str
    name: str
    type: str
    max_dashboards: Optional[int]  # None = unlimited
    keywords_per_dashboard: Optional[int]
    keywords_total: Optional[int]
    keyword_research_credits_per_month: int
    rank_update_frequency: str
    ai_update_frequency: str
    max_team_users: Optional[int]  # None = unlimited
    has_white_label: bool
    has_client_portal: bool
    price_monthly_usd: Optional[int]  # None = custom pricing


TIERS: Dict[str, TierConfig] = {
    "free": TierConfig("free", "Free", AGENCY, 0, 0, None, 0, "daily", "weekly", 0, True, True, 0),
    "solo": TierConfig("solo", "Solo", AGENCY, 3, 50, None, 50, "daily", "weekly", 1, True, True, 147),
    "starter": TierConfig("starter", "Starter", AGENCY, 10, 50, None, 150, "daily", "daily", 2, True, True, 297),
    "growth": TierConfig("growth", "Growth", AGENCY, 25, 100, None, 400, "daily", "daily", 5, True, True, 597),
    "pro": TierConfig("pro", "Pro", AGENCY, 50, 200, None, 1000, "4x_daily", "realtime", 15, True, True, 997),
    "enterprise": TierConfig(
        "enterprise", "Enterprise", AGENCY, None, 500, None, 3000, "realtime", "realtime", None, True, True, None,
    ),
    "business_lite": TierConfig(
        "business_lite", "Business Lite", BUSINESS, 1, None, 15, 25, "weekly", "monthly", 1, False, False, 79,
    ),
    "business_pro": TierConfig(
        "business_pro", "Business Pro", BUSINESS, 1, None, 250, 300, "daily", "daily", 5, False, False, 197,
    ),
}

TIER_IDS = tuple(TIERS)
DEFAULT_TIER_ID = "solo"

_ALIASES = {"biz_lite": "business_lite", "biz_pro": "business_pro"}


def normalize_tier_id(value: Optional[str]) -> Optional[str]:
    """Canonical tier id for a stored value ("Business Pro" -> "business_pro"), or None."""
    if not value or not isinstance(value, str):
        return None
    candidate = "_".join(value.strip().lower().split())
    if candidate in TIERS:
        return candidate
    return _ALIASES.get(candidate)


def get_tier_config(value: Optional[str]) -> Optional[TierConfig]:
    tier_id = normalize_tier_id(value)
    return TIERS.get(tier_id) if tier_id else None


def tier_level(value: Optional[str]) -> int:
    """Monthly list price used to rank tiers; unknown and custom-priced tiers rank 0."""
    config = get_tier_config(value)
    if config is None or config.price_monthly_usd is None:
        return 0
    return config.price_monthly_usd
