"""Google Ads and GA4 connection endpoints.

WHAT:
    OAuth consent URL, OAuth callback, connection status, account picker
    (Google Ads customers / GA4 properties), account selection and
    disconnect, per client.

WHY:
    A client's integration is only usable once tokens are stored AND an
    account is selected; these endpoints walk it through
    DISCONNECTED -> CONNECTING -> CONNECTED.

REFERENCES:
    - app/services/oauth_client.py (consent URL, code exchange, state encoding)
    - app/services/token_service.py (token store, connection state)
    - https://developers.google.com/identity/protocols/oauth2/web-server
"""

import json
import logging
from typing import Callable, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from app import schemas
from app.database import get_db
from app.deps import (
    get_accessible_client,
    get_ga4_service,
    get_google_ads_service,
    get_oauth_factory,
    get_settings,
    http_error,
)
from app.models import Client
from app.services.exceptions import IntegrationError, OAuthConfigurationError, OAuthTokenError
from app.services.ga4_client import GA4Service
from app.services.google_ads_client import GoogleAdsService
from app.services.oauth_client import GoogleOAuthClient, Vendor, build_state, parse_state
from app.services.token_service import (
    account_email,
    account_id,
    connection_status,
    ConnectionState,
    disconnect,
    load_client,
    select_account,
    store_tokens,
)
from app.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/clients",
    tags=["Integrations"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Not authenticated or token revoked"},
        403: {"model": schemas.ErrorResponse, "description": "Access denied"},
        404: {"model": schemas.ErrorResponse, "description": "Client not found"},
    },
)

# Query parameter the frontend reads after the redirect, per vendor.
_RESULT_PARAM = {Vendor.google_ads: "google_ads", Vendor.ga4: "ga4"}


def _auth_url(vendor: Vendor, client: Client, popup: bool, oauth_factory: Callable[..., GoogleOAuthClient]) -> dict:
    try:
        oauth = oauth_factory(vendor)
    except OAuthConfigurationError as e:
        raise http_error(e)
    return {"auth_url": oauth.authorization_url(build_state(str(client.id), popup))}


def _popup_page(vendor: Vendor, client_id: Optional[str], ok: bool, message: Optional[str]) -> HTMLResponse:
    """Tiny page that reports the result to the opener window and closes itself."""
    settings = get_settings()
    payload = json.dumps(
        {
            "type": f"{_RESULT_PARAM[vendor]}_oauth",
            "success": ok,
            "clientId": client_id,
            "error": message,
        }
    )
    origin = json.dumps(settings.FRONTEND_URL.rstrip("/"))
    html = (
        "<!DOCTYPE html><html><body><script>"
        f"if (window.opener) {{ window.opener.postMessage({payload}, {origin}); }}"
        "window.close();"
        "</script></body></html>"
    )
    return HTMLResponse(content=html)


def _finish(vendor: Vendor, client_id: Optional[str], popup: bool, ok: bool, message: Optional[str] = None):
    if popup:
        return _popup_page(vendor, client_id, ok, message)
    settings = get_settings()
    params = {_RESULT_PARAM[vendor]: "connected" if ok else "error"}
    if message:
        params["message"] = message
    path = f"/clients/{client_id}" if client_id else "/clients"
    return RedirectResponse(url=f"{settings.FRONTEND_URL.rstrip('/')}{path}?{urlencode(params)}")


async def _callback(
    vendor: Vendor,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str],
    db: Session,
    oauth_factory: Callable[..., GoogleOAuthClient],
):
    """Shared OAuth callback: exchange the code and store tokens on the state's client.

    Google redirects the browser here, so failures become a redirect (or
    popup message) carrying an error code instead of a JSON error.
    """
    label = vendor.display_name
    client_id, popup = parse_state(state) if state else (None, False)

    if error:
        logger.warning("[OAUTH] %s consent returned error: %s", label, error)
        return _finish(vendor, client_id, popup, False, error)
    if not code or not client_id:
        logger.warning("[OAUTH] %s callback missing code or state", label)
        return _finish(vendor, client_id, popup, False, "missing_code" if not code else "missing_state")

    client = load_client(db, client_id)
    if client is None:
        logger.warning("[OAUTH] %s callback for unknown client %s", label, client_id)
        return _finish(vendor, client_id, popup, False, "invalid_client")

    try:
        oauth = oauth_factory(vendor)
        grant = await oauth.exchange_code(code)
    except OAuthConfigurationError as e:
        logger.error("[OAUTH] %s callback with OAuth not configured: %s", label, e)
        return _finish(vendor, client_id, popup, False, "oauth_not_configured")
    except OAuthTokenError as e:
        logger.error("[OAUTH] %s code exchange failed for client %s: %s", label, client_id, e)
        capture_exception(e, extra={"vendor": label, "client_id": client_id})
        return _finish(vendor, client_id, popup, False, "token_exchange_failed")

    store_tokens(db, client, vendor, grant)
    logger.info("[OAUTH] %s tokens stored for client %s", label, client_id)
    return _finish(vendor, client_id, popup, True)


def _status(client: Client, vendor: Vendor) -> schemas.IntegrationStatus:
    state = connection_status(client, vendor)
    connected_at = getattr(client, f"{vendor.value}_connected_at")
    return schemas.IntegrationStatus(
        state=state.value,
        connected=state == ConnectionState.connected,
        account_id=account_id(client, vendor),
        account_email=account_email(client, vendor),
        connected_at=connected_at,
    )


# --- Google Ads ------------------------------------------------------------------

@router.get("/{client_id}/google-ads/auth-url", response_model=schemas.AuthUrlResponse)
def google_ads_auth_url(
    popup: bool = Query(False, description="Popup flow: the callback posts a message instead of redirecting"),
    client: Client = Depends(get_accessible_client),
    oauth_factory: Callable[..., GoogleOAuthClient] = Depends(get_oauth_factory),
):
    """Google consent URL for connecting this client's Google Ads account."""
    return _auth_url(Vendor.google_ads, client, popup, oauth_factory)


@router.get("/google-ads/callback", include_in_schema=False)
async def google_ads_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    oauth_factory: Callable[..., GoogleOAuthClient] = Depends(get_oauth_factory),
):
    return await _callback(Vendor.google_ads, code, state, error, db, oauth_factory)


@router.get("/{client_id}/google-ads/status", response_model=schemas.IntegrationStatus)
def google_ads_status(client: Client = Depends(get_accessible_client)):
    return _status(client, Vendor.google_ads)


@router.get("/{client_id}/google-ads/customers", response_model=schemas.CustomerListResponse)
async def google_ads_customers(
    client: Client = Depends(get_accessible_client),
    service: GoogleAdsService = Depends(get_google_ads_service),
):
    """Customer ids the connected Google account can access (account picker)."""
    try:
        customers = await service.list_customers(str(client.id))
    except IntegrationError as e:
        raise http_error(e)
    return {"customers": customers}


@router.post("/{client_id}/google-ads/customer", response_model=schemas.IntegrationStatus)
def google_ads_select_customer(
    payload: schemas.SelectCustomerRequest,
    client: Client = Depends(get_accessible_client),
    db: Session = Depends(get_db),
):
    """Select the Google Ads customer; completes the connection when tokens exist."""
    try:
        select_account(db, client, Vendor.google_ads, payload.customer_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _status(client, Vendor.google_ads)


@router.post("/{client_id}/google-ads/disconnect", response_model=schemas.MessageResponse)
def google_ads_disconnect(client: Client = Depends(get_accessible_client), db: Session = Depends(get_db)):
    disconnect(db, client, Vendor.google_ads)
    return {"message": "Google Ads disconnected"}


# --- GA4 -----------------------------------------------------------------------------

@router.get("/{client_id}/ga4/auth-url", response_model=schemas.AuthUrlResponse)
def ga4_auth_url(
    popup: bool = Query(False, description="Popup flow: the callback posts a message instead of redirecting"),
    client: Client = Depends(get_accessible_client),
    oauth_factory: Callable[..., GoogleOAuthClient] = Depends(get_oauth_factory),
):
    """Google consent URL for connecting this client's GA4 property."""
    return _auth_url(Vendor.ga4, client, popup, oauth_factory)


@router.get("/ga4/callback", include_in_schema=False)
async def ga4_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    oauth_factory: Callable[..., GoogleOAuthClient] = Depends(get_oauth_factory),
):
    return await _callback(Vendor.ga4, code, state, error, db, oauth_factory)


@router.get("/{client_id}/ga4/status", response_model=schemas.IntegrationStatus)
def ga4_status(client: Client = Depends(get_accessible_client)):
    return _status(client, Vendor.ga4)


@router.get("/{client_id}/ga4/properties", response_model=schemas.PropertyListResponse)
async def ga4_properties(
    client: Client = Depends(get_accessible_client),
    service: GA4Service = Depends(get_ga4_service),
):
    try:
        properties = await service.list_properties(str(client.id))
    except IntegrationError as e:
        raise http_error(e)
    return {"properties": properties}


@router.post("/{client_id}/ga4/property", response_model=schemas.IntegrationStatus)
def ga4_select_property(
    payload: schemas.SelectPropertyRequest,
    client: Client = Depends(get_accessible_client),
    db: Session = Depends(get_db),
):
    try:
        select_account(db, client, Vendor.ga4, payload.property_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _status(client, Vendor.ga4)


@router.post("/{client_id}/ga4/disconnect", response_model=schemas.MessageResponse)
def ga4_disconnect(client: Client = Depends(get_accessible_client), db: Session = Depends(get_db)):
    disconnect(db, client, Vendor.ga4)
    return {"message": "GA4 disconnected"}
