"""Client dashboard reporting endpoints (Google Ads and GA4).

All reports take an inclusive `start_date` / `end_date` window that defaults
to the last 30 days. Token refresh and the Google Ads login-customer-id
retries happen inside the services; this layer only maps their errors.
"""

import logging
from datetime import date, timedelta
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query

from app import schemas
from app.deps import get_accessible_client, get_ga4_service, get_google_ads_service, http_error
from app.models import Client
from app.services.exceptions import IntegrationError
from app.services.ga4_client import GA4Service
from app.services.google_ads_client import GoogleAdsService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/clients",
    tags=["Reports"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Integration not connected or bad parameters"},
        401: {"model": schemas.ErrorResponse, "description": "Vendor token revoked or refresh failed"},
        403: {"model": schemas.ErrorResponse, "description": "Access denied"},
        502: {"model": schemas.ErrorResponse, "description": "Vendor API error"},
    },
)

DEFAULT_WINDOW_DAYS = 30


def _window(start_date: Optional[date], end_date: Optional[date]) -> Tuple[date, date]:
    end = end_date or date.today()
    start = start_date or end - timedelta(days=DEFAULT_WINDOW_DAYS - 1)
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must be on or before end_date")
    return start, end


async def _report(coro):
    try:
        return await coro
    except IntegrationError as e:
        logger.warning("[REPORTS] %s: %s", type(e).__name__, e)
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{client_id}/google-ads/campaigns")
async def google_ads_campaigns(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    client: Client = Depends(get_accessible_client),
    service: GoogleAdsService = Depends(get_google_ads_service),
):
    """Campaign performance with totals, sorted by clicks."""
    start, end = _window(start_date, end_date)
    return await _report(service.fetch_campaigns(str(client.id), start, end))


@router.get("/{client_id}/google-ads/ad-groups")
async def google_ads_ad_groups(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    campaign_id: Optional[str] = Query(None),
    client: Client = Depends(get_accessible_client),
    service: GoogleAdsService = Depends(get_google_ads_service),
):
    start, end = _window(start_date, end_date)
    return await _report(service.fetch_ad_groups(str(client.id), start, end, campaign_id=campaign_id))


@router.get("/{client_id}/google-ads/keywords")
async def google_ads_keywords(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    campaign_id: Optional[str] = Query(None),
    ad_group_id: Optional[str] = Query(None),
    client: Client = Depends(get_accessible_client),
    service: GoogleAdsService = Depends(get_google_ads_service),
):
    """Keyword performance (up to 1000 keywords), optionally scoped to a campaign / ad group."""
    start, end = _window(start_date, end_date)
    return await _report(
        service.fetch_keywords(str(client.id), start, end, campaign_id=campaign_id, ad_group_id=ad_group_id)
    )


@router.get("/{client_id}/google-ads/conversions")
async def google_ads_conversions(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    client: Client = Depends(get_accessible_client),
    service: GoogleAdsService = Depends(get_google_ads_service),
):
    start, end = _window(start_date, end_date)
    return await _report(service.fetch_conversions(str(client.id), start, end))


@router.get("/{client_id}/ga4/traffic")
async def ga4_traffic(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    client: Client = Depends(get_accessible_client),
    service: GA4Service = Depends(get_ga4_service),
):
    """Sessions by channel, users, engagement, conversions and daily user trends."""
    start, end = _window(start_date, end_date)
    return await _report(service.fetch_traffic(str(client.id), start, end))


@router.get("/{client_id}/ga4/events")
async def ga4_events(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    client: Client = Depends(get_accessible_client),
    service: GA4Service = Depends(get_ga4_service),
):
    """Top 10 events with change against the preceding period of equal length."""
    start, end = _window(start_date, end_date)
    return await _report(service.fetch_events(str(client.id), start, end))


@router.get("/{client_id}/ga4/top-events")
async def ga4_top_events(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    client: Client = Depends(get_accessible_client),
    service: GA4Service = Depends(get_ga4_service),
):
    start, end = _window(start_date, end_date)
    return await _report(service.fetch_top_events(str(client.id), start, end, limit=limit))


@router.get("/{client_id}/ga4/visitor-sources")
async def ga4_visitor_sources(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    client: Client = Depends(get_accessible_client),
    service: GA4Service = Depends(get_ga4_service),
):
    """Active users per session source."""
    start, end = _window(start_date, end_date)
    return await _report(service.fetch_visitor_sources(str(client.id), start, end, limit=limit))


@router.get("/{client_id}/ga4/engagement")
async def ga4_engagement(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    client: Client = Depends(get_accessible_client),
    service: GA4Service = Depends(get_ga4_service),
):
    """Engaged sessions and engagement rate; null when no property is selected or GA4 failed."""
    start, end = _window(start_date, end_date)
    return await _report(service.fetch_engagement_summary(str(client.id), start, end))
