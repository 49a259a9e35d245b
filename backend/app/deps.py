"""Dependency providers, settings management and role gates."""

from functools import lru_cache
from typing import Callable, Optional
from uuid import UUID

import httpx
from fastapi import Cookie, Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import Client, RoleEnum, User
from .security import decode_token
from .services.exceptions import IntegrationError
from .services.ga4_client import GA4Service
from .services.google_ads_client import GAdsClient, GoogleAdsService
from .services.oauth_client import GoogleOAuthClient, Vendor, build_oauth_client
from .services.token_service import TokenRefreshManager
from .telemetry import set_user_context


class Settings(BaseSettings):
    """Application settings loaded from environment or .env.

    Vendor credentials (Google, Stripe, DataForSEO) are deliberately not
    fields here: they are read at call time through app.utils.env so a
    misconfigured vendor fails only the requests that need it.
    """

    BACKEND_CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    BACKEND_URL: str = "http://localhost:5000"
    FRONTEND_URL: str = "http://localhost:5173"
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def _strip_bearer(value: str) -> str:
    if value.startswith("Bearer "):
        return value[len("Bearer "):]
    return value


def get_current_user(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(default=None),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> User:
    """Resolve the current user from the Authorization header or `access_token` cookie.

    Both carry "Bearer <jwt>"; the header wins when both are present.
    """
    raw = authorization or access_token
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = decode_token(_strip_bearer(raw))
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = db.query(User).filter(User.email == subject).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    set_user_context(user_id=str(user.id), email=user.email, role=user.role.value)
    return user


def require_roles(*roles: RoleEnum, detail: str = "Access denied") -> Callable[..., User]:
    """Build a dependency that admits only the given roles.

    Example:
        @router.get("/mrr-breakdown")
        def mrr(user: User = Depends(require_roles(RoleEnum.agency, RoleEnum.admin))):
            ...
    """
    allowed = set(roles)

    def _dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return current_user

    return _dependency


def can_access_client(user: User, client: Client) -> bool:
    """Return True when `user` may manage integrations of `client`.

    SUPER_ADMIN / ADMIN see every client, AGENCY / SPECIALIST only their
    agency's clients, USER only the client it belongs to.
    """
    if user.role in (RoleEnum.super_admin, RoleEnum.admin):
        return True
    if user.role in (RoleEnum.agency, RoleEnum.specialist):
        return user.agency_id is not None and user.agency_id == client.agency_id
    return user.client_id is not None and user.client_id == client.id


def get_accessible_client(
    client_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Client:
    """Load the path's client and enforce tenant scoping (404 / 403)."""
    client = db.query(Client).filter(Client.id == client_id).first()
    if not client:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    if not can_access_client(current_user, client):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return client


# --- Integration service providers ---------------------------------------------
# Routers receive services through these so tests can override them with
# `app.dependency_overrides`.

def get_vendor_http_client() -> Optional[httpx.AsyncClient]:
    """Shared AsyncClient for vendor calls; None means each call opens its own."""
    return None


def get_oauth_factory() -> Callable[..., GoogleOAuthClient]:
    return build_oauth_client


def get_google_ads_service(
    db: Session = Depends(get_db),
    http_client: Optional[httpx.AsyncClient] = Depends(get_vendor_http_client),
    oauth_factory: Callable[..., GoogleOAuthClient] = Depends(get_oauth_factory),
) -> GoogleAdsService:
    manager = TokenRefreshManager(
        db, Vendor.google_ads, oauth_factory=lambda v: oauth_factory(v, http_client=http_client)
    )
    return GoogleAdsService(manager, GAdsClient(http_client=http_client))


def get_ga4_service(
    db: Session = Depends(get_db),
    http_client: Optional[httpx.AsyncClient] = Depends(get_vendor_http_client),
    oauth_factory: Callable[..., GoogleOAuthClient] = Depends(get_oauth_factory),
) -> GA4Service:
    manager = TokenRefreshManager(
        db, Vendor.ga4, oauth_factory=lambda v: oauth_factory(v, http_client=http_client)
    )
    return GA4Service(manager, http_client=http_client)


def http_error(exc: IntegrationError) -> HTTPException:
    """Map an integration failure onto the HTTP status its class declares."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_user_message())
