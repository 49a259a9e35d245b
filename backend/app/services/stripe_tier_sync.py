"""Keep `Agency.subscription_tier` in step with Stripe.

WHAT:
    - Maps plan price ids (STRIPE_PRICE_PLAN_* env vars) to tier ids.
    - Applies verified webhook events to the agency row and raises in-app
      notifications for failed payments and plan changes.
    - `sync_agency_tier_from_stripe`: pull-based reconciliation for when a
      webhook never arrived (called after returning from the billing portal).

WHY:
    The subscription page must reflect the plan the customer actually pays
    for. Webhooks are the primary signal; the pull sync repairs drift.

REFERENCES:
    - https://docs.stripe.com/billing/subscriptions/webhooks
    - app/routers/stripe_webhook.py (signature verification, HTTP surface)
    - app/services/tiers.py (tier catalogue)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import stripe
from sqlalchemy.orm import Session

from app.models import Agency, Notification, NotificationTypeEnum
from app.services.mrr_service import StripeGateway, get_stripe_gateway
from app.services.tiers import get_tier_config, normalize_tier_id, tier_level
from app.utils.env import get_env

logger = logging.getLogger(__name__)

SUBSCRIPTION_LINK = "/agency/subscription"

# Enterprise first, then descending; the first configured match wins.
PLAN_PRICE_TO_TIER: Tuple[Tuple[str, str], ...] = (
    ("STRIPE_PRICE_PLAN_ENTERPRISE", "enterprise"),
    ("STRIPE_PRICE_PLAN_PRO", "pro"),
    ("STRIPE_PRICE_PLAN_GROWTH", "growth"),
    ("STRIPE_PRICE_PLAN_STARTER", "starter"),
    ("STRIPE_PRICE_PLAN_SOLO", "solo"),
    ("STRIPE_PRICE_PLAN_BUSINESS_PRO", "business_pro"),
    ("STRIPE_PRICE_PLAN_BUSINESS_LITE", "business_lite"),
)


def _price_id(item: Dict[str, Any]) -> Optional[str]:
    price = item.get("price")
    if isinstance(price, dict):
        return price.get("id")
    return price


def tier_from_subscription_items(items: Iterable[Dict[str, Any]]) -> Optional[str]:
    """Tier id of the first plan price (in PLAN_PRICE_TO_TIER order) present in `items`."""
    price_ids = {pid for pid in (_price_id(item) for item in items) if pid}
    for env_key, tier_id in PLAN_PRICE_TO_TIER:
        price_id = get_env(env_key)
        if price_id and price_id in price_ids:
            return tier_id
    return None


def customer_id_from_event(event: Dict[str, Any]) -> Optional[str]:
    customer = ((event.get("data") or {}).get("object") or {}).get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer or None


def _notify(db: Session, agency: Agency, kind: NotificationTypeEnum, title: str, message: str) -> None:
    db.add(Notification(agency_id=agency.id, type=kind, title=title, message=message, link=SUBSCRIPTION_LINK))
    logger.info("[STRIPE] Queued %s notification for agency %s", kind.value, agency.id)


def _clear_subscription(agency: Agency) -> None:
    agency.subscription_tier = None
    agency.stripe_subscription_id = None


def apply_webhook_event(db: Session, event: Dict[str, Any]) -> Optional[Agency]:
    """Apply one verified Stripe event to the owning agency.

    Returns the agency that was touched, or None when the event carries no
    customer or the customer belongs to no agency (both acknowledged
    upstream). Database errors propagate so the caller can answer 500.
    """
    customer_id = customer_id_from_event(event)
    if not customer_id:
        return None

    agency = db.query(Agency).filter(Agency.stripe_customer_id == customer_id).first()
    if agency is None:
        logger.info("[STRIPE] Event %s for unknown customer %s ignored", event.get("type"), customer_id)
        return None

    event_type = event.get("type")
    subscription = (event.get("data") or {}).get("object") or {}

    if event_type == "invoice.payment_failed":
        _notify(
            db, agency, NotificationTypeEnum.payment_failed, "Payment failed",
            "We couldn't charge your payment method. Please update it in Subscription & Billing "
            "to avoid service interruption.",
        )
    elif event_type == "customer.subscription.deleted":
        _clear_subscription(agency)
    elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
        old_tier = agency.subscription_tier
        if subscription.get("status") == "active":
            items = (subscription.get("items") or {}).get("data") or []
            new_tier = normalize_tier_id(tier_from_subscription_items(items))
            agency.subscription_tier = new_tier
            agency.stripe_subscription_id = subscription.get("id")

            if event_type == "customer.subscription.updated" and old_tier != new_tier:
                config = get_tier_config(new_tier)
                tier_name = config.name if config else (new_tier or "your plan")
                if tier_level(new_tier) > tier_level(old_tier):
                    _notify(
                        db, agency, NotificationTypeEnum.plan_upgrade, "Plan upgraded",
                        f"Your subscription has been upgraded to {tier_name}.",
                    )
                else:
                    _notify(
                        db, agency, NotificationTypeEnum.plan_downgrade, "Plan changed",
                        f"Your subscription has been changed to {tier_name}.",
                    )
        else:
            _clear_subscription(agency)
    else:
        logger.debug("[STRIPE] Unhandled event type %s", event_type)
        return agency

    db.commit()
    logger.info("[STRIPE] Applied %s to agency %s (tier=%s)", event_type, agency.id, agency.subscription_tier)
    return agency


def sync_agency_tier_from_stripe(
    db: Session,
    agency_id: Any,
    gateway: Optional[StripeGateway] = None,
) -> Dict[str, bool]:
    """Pull the agency's subscription from Stripe and store its tier.

    Returns {"updated": True} when the agency row changed.
    """
    gateway = gateway or get_stripe_gateway()
    if gateway is None:
        return {"updated": False}

    agency = db.get(Agency, agency_id)
    if agency is None or not (agency.stripe_customer_id or agency.stripe_subscription_id):
        return {"updated": False}

    subscription: Optional[Dict[str, Any]] = None
    if agency.stripe_subscription_id:
        try:
            subscription = gateway.retrieve_subscription(agency.stripe_subscription_id, expand=["items.data.price"])
        except stripe.StripeError as exc:
            # Deleted subscriptions 404 here; the webhook clears those.
            logger.info("[STRIPE] Retrieving subscription %s failed: %s", agency.stripe_subscription_id, exc)
            return {"updated": False}

    if subscription is None and agency.stripe_customer_id:
        data: List[Dict[str, Any]] = gateway.list_customer_subscriptions(agency.stripe_customer_id).get("data") or []
        subscription = data[0] if data else None

    if not subscription or subscription.get("status") != "active":
        if agency.subscription_tier is not None or agency.stripe_subscription_id is not None:
            _clear_subscription(agency)
            db.commit()
            return {"updated": True}
        return {"updated": False}

    items = (subscription.get("items") or {}).get("data") or []
    tier = normalize_tier_id(tier_from_subscription_items(items))
    if tier == normalize_tier_id(agency.subscription_tier) and subscription.get("id") == agency.stripe_subscription_id:
        return {"updated": False}

    agency.subscription_tier = tier
    agency.stripe_subscription_id = subscription.get("id")
    db.commit()
    logger.info("[STRIPE] Synced agency %s to tier %s", agency.id, tier)
    return {"updated": True}
