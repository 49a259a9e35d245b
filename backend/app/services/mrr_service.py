"""Stripe billing aggregation (MRR breakdown and 30-day subscription activity).

WHAT:
    - `StripeGateway`: the handful of Stripe API calls the financial views
      need, returning plain dicts.
    - `compute_mrr_breakdown`: groups every recurring line item of every
      active subscription into product categories, normalised to monthly.
    - `compute_subscription_activity`: walks 30 days of subscription
      lifecycle events into daily new / churned MRR.

WHY:
    Nothing here is persisted; both views are rebuilt from Stripe on every
    request. The category vocabulary and the interval factors must match
    what finance reads on the Stripe dashboard, so they live in one place.

REFERENCES:
    - https://docs.stripe.com/api/subscriptions/list
    - https://docs.stripe.com/api/events/list
    - app/routers/financial.py (consumer)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

import stripe

from app.utils.env import get_env

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
ACTIVITY_WINDOW_DAYS = 30

PLATFORM_TIERS = ("solo", "starter", "growth", "pro", "enterprise", "business_lite", "business_pro")
MANAGED_PACKAGES = ("foundation", "growth", "domination")

CATEGORY_LABELS = {
    "platform_solo": "Solo",
    "platform_starter": "Starter",
    "platform_growth": "Growth",
    "platform_pro": "Pro",
    "platform_enterprise": "Enterprise",
    "platform_business_lite": "Business Lite",
    "platform_business_pro": "Business Pro",
    "managed_foundation": "Foundation (Managed)",
    "managed_growth": "Growth (Managed)",
    "managed_domination": "Domination (Managed)",
    "addon_slots": "Extra Slots",
    "addon_mappacks": "Map Packs",
    "addon_creditpacks": "Credit Packs",
    "other": "Other",
}

DEFAULT_COLOR = "#94a3b8"
CATEGORY_COLORS = {
    "platform_solo": "#6366f1",
    "platform_starter": "#8b5cf6",
    "platform_growth": "#a855f7",
    "platform_pro": "#d946ef",
    "platform_enterprise": "#ec4899",
    "managed_foundation": "#0ea5e9",
    "managed_growth": "#06b6d4",
    "managed_domination": "#14b8a6",
    "addon_slots": "#22c55e",
    "addon_mappacks": "#84cc16",
    "addon_creditpacks": "#eab308",
    "other": DEFAULT_COLOR,
}


# --- Stripe access -------------------------------------------------------------

def is_stripe_configured() -> bool:
    """Stripe counts as configured only with a secret key (`sk_...`)."""
    key = get_env("STRIPE_SECRET_KEY")
    return bool(key and key.startswith("sk_"))


def _as_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject to a plain nested dict (its str() is the JSON rendering)."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    return json.loads(str(obj))


class StripeGateway:
    """Thin wrapper over the `stripe` module for one secret key."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def list_active_subscriptions(self, starting_after: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "status": "active",
            "expand": ["data.items.data.price", "data.customer"],
            "limit": PAGE_SIZE,
        }
        if starting_after:
            params["starting_after"] = starting_after
        return _as_dict(stripe.Subscription.list(api_key=self.api_key, **params))

    def list_customer_subscriptions(self, customer_id: str, status: str = "active", limit: int = 1) -> Dict[str, Any]:
        return _as_dict(
            stripe.Subscription.list(api_key=self.api_key, customer=customer_id, status=status, limit=limit)
        )

    def retrieve_subscription(self, subscription_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        return _as_dict(stripe.Subscription.retrieve(subscription_id, api_key=self.api_key, expand=expand or []))

    def retrieve_product(self, product_id: str) -> Dict[str, Any]:
        return _as_dict(stripe.Product.retrieve(product_id, api_key=self.api_key))

    def list_events(self, event_type: str, created_gte: int, starting_after: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"type": event_type, "created": {"gte": created_gte}, "limit": PAGE_SIZE}
        if starting_after:
            params["starting_after"] = starting_after
        return _as_dict(stripe.Event.list(api_key=self.api_key, **params))


def get_stripe_gateway() -> Optional[StripeGateway]:
    """Gateway for the configured secret key, or None when Stripe is not configured."""
    if not is_stripe_configured():
        return None
    return StripeGateway(get_env("STRIPE_SECRET_KEY"))


# --- Pure helpers ----------------------------------------------------------------

def normalize_to_monthly(amount: float, interval: Optional[str]) -> float:
    """Monthly equivalent of `amount` billed every `interval`; unknown intervals pass through."""
    if interval == "day":
        return amount * 30
    if interval == "week":
        return amount * (52 / 12)
    if interval == "year":
        return amount / 12
    return amount


def categorize_product(product: Any) -> str:
    """Classify a Stripe product (dict) or bare product name into an MRR category.

    Metadata (`tier`, then `plan`, then `package`) wins over the product
    name. Within each source platform tiers are checked before managed
    packages, and add-on keywords only apply to the name. Matching is by
    substring, so tier order decides ties ("business_pro" contains "pro").
    """
    if isinstance(product, dict):
        name = str(product.get("name") or "").lower()
        metadata = {str(k).lower(): str(v or "").lower() for k, v in (product.get("metadata") or {}).items()}
    else:
        name = str(product or "").lower()
        metadata = {}

    tier = metadata.get("tier") or metadata.get("plan") or metadata.get("package") or ""
    if tier:
        for platform in PLATFORM_TIERS:
            if platform in tier:
                return f"platform_{platform}"
        for package in MANAGED_PACKAGES:
            if package in tier:
                return f"managed_{package}"

    for platform in PLATFORM_TIERS:
        if platform in name:
            return f"platform_{platform}"
    for package in MANAGED_PACKAGES:
        if package in name and ("managed" in name or "service" in name):
            return f"managed_{package}"
    if "slot" in name:
        return "addon_slots"
    if "map pack" in name or "mappack" in name:
        return "addon_mappacks"
    if "credit pack" in name or "creditpack" in name:
        return "addon_creditpacks"
    return "other"


def _id_of(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("id") or ""
    return value or ""


def item_monthly_amount(item: Dict[str, Any]) -> Optional[float]:
    """Monthly amount in currency units for a subscription item; None when not recurring."""
    price = item.get("price") or {}
    recurring = price.get("recurring") if isinstance(price, dict) else None
    if not recurring:
        return None
    unit_amount = price.get("unit_amount") or 0
    quantity = item.get("quantity") or 1
    return normalize_to_monthly(unit_amount * quantity / 100, recurring.get("interval"))


def items_monthly_total(items: List[Dict[str, Any]]) -> float:
    return sum(amount for amount in (item_monthly_amount(i) for i in items) if amount is not None)


def _paginate(fetch_page) -> Iterator[Dict[str, Any]]:
    """Yield objects across cursor pages: `has_more` plus last id as `starting_after`."""
    starting_after: Optional[str] = None
    while True:
        page = fetch_page(starting_after)
        data = page.get("data") or []
        for obj in data:
            yield obj
        if not (page.get("has_more") and data):
            break
        starting_after = data[-1].get("id")


# --- MRR breakdown -------------------------------------------------------------------

@dataclass
class MrrSegment:
    category: str
    label: str
    color: str
    mrr: float = 0.0
    count: int = 0
    accounts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "label": self.label,
            "mrr": self.mrr,
            "count": self.count,
            "color": self.color,
            "accounts": self.accounts,
        }


@dataclass
class MrrBreakdown:
    total_mrr: float
    segments: List[MrrSegment]


def compute_mrr_breakdown(gateway: StripeGateway) -> MrrBreakdown:
    """Active-subscription MRR grouped by product category, largest segment first."""
    segments: Dict[str, MrrSegment] = {}
    product_cache: Dict[str, Dict[str, Any]] = {}

    for subscription in _paginate(gateway.list_active_subscriptions):
        customer = subscription.get("customer")
        customer_id = _id_of(customer)
        customer_email = (customer.get("email") or "") if isinstance(customer, dict) else ""

        for item in (subscription.get("items") or {}).get("data") or []:
            monthly = item_monthly_amount(item)
            if monthly is None:
                continue

            product = item["price"].get("product")
            if not isinstance(product, dict):
                product_id = product or ""
                if product_id not in product_cache:
                    product_cache[product_id] = gateway.retrieve_product(product_id) if product_id else {}
                product = product_cache[product_id]
            product_name = product.get("name") if isinstance(product.get("name"), str) else "Unknown"
            category = categorize_product(product_name if product.get("deleted") else product)

            segment = segments.get(category)
            if segment is None:
                segment = MrrSegment(
                    category=category,
                    label=CATEGORY_LABELS.get(category, category),
                    color=CATEGORY_COLORS.get(category, DEFAULT_COLOR),
                )
                segments[category] = segment
            segment.mrr += monthly
            segment.count += 1
            segment.accounts.append(
                {"customer_id": customer_id, "customer_email": customer_email, "mrr": monthly, "product_name": product_name}
            )

    ordered = sorted((s for s in segments.values() if s.mrr > 0), key=lambda s: s.mrr, reverse=True)
    return MrrBreakdown(total_mrr=sum(s.mrr for s in ordered), segments=ordered)


# --- Subscription activity -------------------------------------------------------------

def _date_key(timestamp: Optional[int]) -> str:
    return datetime.fromtimestamp(timestamp or 0, tz=timezone.utc).strftime("%Y-%m-%d")


def _cents(value: float) -> float:
    return round(value * 100) / 100


def compute_subscription_activity(gateway: StripeGateway, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Daily new vs churned MRR for the 30 days ending `now` (UTC).

    created -> the subscription's MRR is new (re-retrieved with expanded
    items); updated with changed items -> the MRR delta counts as new when
    positive and churn when negative; deleted -> the subscription's MRR is
    churn. Events dated outside the 30 buckets are ignored.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    since = int(now.timestamp()) - ACTIVITY_WINDOW_DAYS * 24 * 60 * 60

    keys = [(now - timedelta(days=offset)).strftime("%Y-%m-%d") for offset in range(ACTIVITY_WINDOW_DAYS - 1, -1, -1)]
    new_by_day = {key: 0.0 for key in keys}
    churn_by_day = {key: 0.0 for key in keys}
    totals = {"new": 0.0, "churn": 0.0}

    def events(event_type: str) -> Iterator[Dict[str, Any]]:
        return _paginate(lambda cursor: gateway.list_events(event_type, since, cursor))

    def add(bucket: Dict[str, float], total_key: str, day: str, amount: float) -> None:
        if day in bucket:
            bucket[day] += amount
            totals[total_key] += amount

    for event in events("customer.subscription.created"):
        subscription = (event.get("data") or {}).get("object") or {}
        if not subscription.get("id"):
            continue
        expanded = gateway.retrieve_subscription(subscription["id"], expand=["items.data.price.product"])
        mrr = items_monthly_total((expanded.get("items") or {}).get("data") or [])
        add(new_by_day, "new", _date_key(event.get("created")), mrr)

    for event in events("customer.subscription.updated"):
        data = event.get("data") or {}
        previous_items = (data.get("previous_attributes") or {}).get("items")
        if not previous_items:
            continue
        current_items = ((data.get("object") or {}).get("items") or {}).get("data") or []
        delta = items_monthly_total(current_items) - items_monthly_total(previous_items.get("data") or [])
        day = _date_key(event.get("created"))
        if delta > 0:
            add(new_by_day, "new", day, delta)
        elif delta < 0:
            add(churn_by_day, "churn", day, -delta)

    for event in events("customer.subscription.deleted"):
        subscription = (event.get("data") or {}).get("object") or {}
        items = (subscription.get("items") or {}).get("data")
        if not items:
            continue
        add(churn_by_day, "churn", _date_key(event.get("created")), items_monthly_total(items))

    logger.info(
        "[STRIPE] Subscription activity since %s: new=%.2f churned=%.2f",
        keys[0], totals["new"], totals["churn"],
    )
    return {
        "configured": True,
        "daily_data": [
            {"date": key, "new_mrr": _cents(new_by_day[key]), "churned_mrr": _cents(churn_by_day[key])} for key in keys
        ],
        "new_mrr_added": _cents(totals["new"]),
        "churned_mrr": _cents(totals["churn"]),
        "net_change": _cents(totals["new"] - totals["churn"]),
    }
