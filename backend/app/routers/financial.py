"""Financial overview endpoints (Stripe MRR, subscription activity, DataForSEO spend).

WHAT:
    - GET /api/financial/mrr-breakdown
    - GET /api/financial/subscription-activity
    - GET /api/financial/dataforseo-usage (SUPER_ADMIN only)

WHY:
    An unconfigured vendor is a normal state for a fresh deployment, so it
    is answered with `configured: false` and a hint, never an error.

REFERENCES:
    - app/services/mrr_service.py
    - app/services/dataforseo_service.py
"""

import logging
from typing import Optional

import httpx
import stripe
from fastapi import APIRouter, Depends, HTTPException

from app import schemas
from app.deps import get_vendor_http_client, require_roles
from app.models import RoleEnum, User
from app.services.dataforseo_service import fetch_dataforseo_usage
from app.services.mrr_service import (
    StripeGateway,
    compute_mrr_breakdown,
    compute_subscription_activity,
    get_stripe_gateway,
)
from app.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/financial",
    tags=["Financial"],
    responses={403: {"model": schemas.ErrorResponse, "description": "Access denied"}},
)

financial_access = require_roles(RoleEnum.agency, RoleEnum.admin, RoleEnum.super_admin)
super_admin_only = require_roles(RoleEnum.super_admin, detail="Access denied. Super Admin only.")


@router.get("/mrr-breakdown")
def mrr_breakdown(
    current_user: User = Depends(financial_access),
    gateway: Optional[StripeGateway] = Depends(get_stripe_gateway),
):
    """Monthly recurring revenue of all active subscriptions, by product category."""
    if gateway is None:
        return {
            "total_mrr": 0,
            "segments": [],
            "configured": False,
            "message": "Stripe is not configured. Set STRIPE_SECRET_KEY",
        }

    try:
        breakdown = compute_mrr_breakdown(gateway)
    except stripe.StripeError as e:
        logger.error("[FINANCIAL] mrr-breakdown failed: %s", e)
        capture_exception(e, extra={"endpoint": "mrr-breakdown"})
        raise HTTPException(status_code=500, detail=f"Failed to fetch MRR breakdown: {e.user_message or e}")

    return {
        "total_mrr": breakdown.total_mrr,
        "segments": [segment.to_dict() for segment in breakdown.segments],
        "configured": True,
    }


@router.get("/subscription-activity")
def subscription_activity(
    current_user: User = Depends(financial_access),
    gateway: Optional[StripeGateway] = Depends(get_stripe_gateway),
):
    """Daily new vs churned MRR over the last 30 days."""
    if gateway is None:
        return {
            "configured": False,
            "daily_data": [],
            "new_mrr_added": 0,
            "churned_mrr": 0,
            "net_change": 0,
            "message": "Stripe is not configured.",
        }

    try:
        return compute_subscription_activity(gateway)
    except stripe.StripeError as e:
        logger.error("[FINANCIAL] subscription-activity failed: %s", e)
        capture_exception(e, extra={"endpoint": "subscription-activity"})
        raise HTTPException(status_code=500, detail=f"Failed to fetch subscription activity: {e.user_message or e}")


@router.get("/dataforseo-usage")
async def dataforseo_usage(
    current_user: User = Depends(super_admin_only),
    http_client: Optional[httpx.AsyncClient] = Depends(get_vendor_http_client),
):
    """DataForSEO balance, deposits, subscription expiries and daily spend."""
    try:
        return await fetch_dataforseo_usage(http_client)
    except (httpx.HTTPError, ValueError) as e:
        logger.error("[DATAFORSEO] usage lookup failed: %s", e)
        capture_exception(e, extra={"endpoint": "dataforseo-usage"})
        raise HTTPException(status_code=500, detail=f"Failed to fetch DataForSEO usage: {e}")
