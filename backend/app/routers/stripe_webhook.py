"""Stripe webhook receiver and on-demand tier sync.

WHAT:
    - POST /api/stripe/webhook: verifies the `Stripe-Signature` header
      against the raw body, then applies the event to the owning agency.
    - POST /api/stripe/sync-tier: pull the caller's subscription from
      Stripe (used after returning from the billing portal).

WHY:
    Signature verification needs the exact bytes Stripe sent, so the body is
    read raw and parsed only after it verifies. Events for customers we do
    not know are acknowledged so Stripe stops retrying them.

REFERENCES:
    - https://docs.stripe.com/webhooks#verify-events
    - app/services/stripe_tier_sync.py
"""

import json
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import schemas
from app.database import get_db
from app.deps import require_roles
from app.models import RoleEnum, User
from app.services.mrr_service import is_stripe_configured
from app.services.stripe_tier_sync import apply_webhook_event, sync_agency_tier_from_stripe
from app.telemetry import capture_exception
from app.utils.env import get_env

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe"])


@router.post("/webhook", response_model=schemas.WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    webhook_secret = get_env("STRIPE_WEBHOOK_SECRET")
    if not is_stripe_configured() or not webhook_secret:
        logger.error("[STRIPE_WEBHOOK] Received event but Stripe or the webhook secret is not configured")
        raise HTTPException(status_code=500, detail="Webhook or Stripe not configured")

    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing signature or raw body")

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, stripe_signature, webhook_secret)
        event = json.loads(payload)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("[STRIPE_WEBHOOK] Signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        apply_webhook_event(db, event)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[STRIPE_WEBHOOK] Processing %s failed: %s", event.get("type"), e)
        capture_exception(e, extra={"event_type": event.get("type"), "event_id": event.get("id")})
        raise HTTPException(status_code=500, detail="Processing failed")

    return {"received": True}


@router.post("/sync-tier")
def sync_tier(
    current_user: User = Depends(require_roles(RoleEnum.agency)),
    db: Session = Depends(get_db),
):
    """Reconcile the caller's agency tier with Stripe; returns {"updated": bool}."""
    if current_user.agency_id is None:
        raise HTTPException(status_code=400, detail="User is not linked to an agency")
    try:
        return sync_agency_tier_from_stripe(db, current_user.agency_id)
    except stripe.StripeError as e:
        logger.error("[STRIPE] Tier sync for agency %s failed: %s", current_user.agency_id, e)
        raise HTTPException(status_code=502, detail="Could not reach Stripe")
