"""Token service: OAuth token store and refresh lifecycle per client.

WHAT:
    Persists encrypted Google Ads / GA4 tokens on the client row, derives
    the connection state, and hands vendor executors a freshly refreshed
    access token through `TokenRefreshManager.get_client`.

WHY:
    - Keeps encryption and token bookkeeping out of routers.
    - Separates permanent authorization loss (user revoked access, tokens
      are wiped and the user must re-consent) from transient refresh
      failures (tokens kept, next request retries).

REFERENCES:
    - app/security.py (encrypt_secret / decrypt_secret)
    - app/services/oauth_client.py (token endpoint calls)
    - app/services/vendor_errors.py (classify_oauth_error)
    - app/services/revoked_token_cache.py
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.models import Client
from app.security import decrypt_secret, encrypt_secret
from app.services.exceptions import (
    IntegrationNotConnectedError,
    OAuthTokenError,
    TokenRefreshError,
    TokenRevokedError,
)
from app.services.oauth_client import GoogleOAuthClient, TokenGrant, Vendor, build_oauth_client
from app.services.revoked_token_cache import RevokedTokenCache, revoked_token_cache
from app.services.vendor_errors import VendorErrorKind, classify_oauth_error
from app.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    disconnected = "DISCONNECTED"
    connecting = "CONNECTING"  # consent granted, account not selected yet
    connected = "CONNECTED"


@dataclass(frozen=True)
class _TokenColumns:
    access_token: str
    refresh_token: str
    account_id: str
    email: str
    connected_at: str


_COLUMNS = {
    Vendor.google_ads: _TokenColumns(
        access_token="google_ads_access_token",
        refresh_token="google_ads_refresh_token",
        account_id="google_ads_customer_id",
        email="google_ads_account_email",
        connected_at="google_ads_connected_at",
    ),
    Vendor.ga4: _TokenColumns(
        access_token="ga4_access_token",
        refresh_token="ga4_refresh_token",
        account_id="ga4_property_id",
        email="ga4_account_email",
        connected_at="ga4_connected_at",
    ),
}


@dataclass
class AuthorizedClient:
    """What a vendor executor needs for one call."""

    client_id: str
    vendor: Vendor
    access_token: str
    account_id: Optional[str]


def normalize_customer_id(value: str) -> str:
    """Google Ads ids are stored and sent without dashes."""
    return value.replace("-", "").replace(" ", "").strip()


def normalize_property_id(value: str) -> str:
    """GA4 property ids are stored without the `properties/` prefix."""
    value = value.strip()
    return value[len("properties/"):] if value.startswith("properties/") else value


def _as_uuid(client_id: Union[str, UUID]) -> Optional[UUID]:
    if isinstance(client_id, UUID):
        return client_id
    try:
        return UUID(str(client_id))
    except ValueError:
        return None


def load_client(db: Session, client_id: Union[str, UUID]) -> Optional[Client]:
    key = _as_uuid(client_id)
    if key is None:
        return None
    return db.query(Client).filter(Client.id == key).first()


def connection_status(client: Client, vendor: Vendor) -> ConnectionState:
    """Derive the connection state from the token store columns.

    CONNECTED requires refresh token, account id and connected_at together;
    a refresh token alone means consent finished but no account was picked.
    """
    cols = _COLUMNS[vendor]
    refresh = getattr(client, cols.refresh_token)
    account = getattr(client, cols.account_id)
    connected_at = getattr(client, cols.connected_at)
    if refresh and account and connected_at:
        return ConnectionState.connected
    if refresh:
        return ConnectionState.connecting
    return ConnectionState.disconnected


def account_email(client: Client, vendor: Vendor) -> Optional[str]:
    return getattr(client, _COLUMNS[vendor].email)


def account_id(client: Client, vendor: Vendor) -> Optional[str]:
    return getattr(client, _COLUMNS[vendor].account_id)


def _label(client: Client, vendor: Vendor, kind: str) -> str:
    return f"{vendor.value}:{client.id}:{kind}"


def store_tokens(db: Session, client: Client, vendor: Vendor, grant: TokenGrant) -> None:
    """Encrypt and persist a fresh token grant from the OAuth callback.

    connected_at is only set when an account is already selected; otherwise
    the connection completes in `select_account`.
    """
    cols = _COLUMNS[vendor]
    setattr(client, cols.access_token, encrypt_secret(grant.access_token, context=_label(client, vendor, "access")))
    setattr(client, cols.refresh_token, encrypt_secret(grant.refresh_token, context=_label(client, vendor, "refresh")))
    if grant.email:
        setattr(client, cols.email, grant.email)
    setattr(client, cols.connected_at, datetime.utcnow() if getattr(client, cols.account_id) else None)
    revoked_token_cache.forget(vendor.value, str(client.id))
    db.add(client)
    db.commit()
    logger.info("[TOKEN_SERVICE] Stored %s tokens for client %s", vendor.display_name, client.id)


def select_account(db: Session, client: Client, vendor: Vendor, selected_id: str) -> None:
    """Persist the chosen Google Ads customer / GA4 property and complete the connection."""
    cols = _COLUMNS[vendor]
    normalized = (
        normalize_customer_id(selected_id) if vendor == Vendor.google_ads else normalize_property_id(selected_id)
    )
    if not normalized:
        raise ValueError("Account id must not be empty")
    setattr(client, cols.account_id, normalized)
    if getattr(client, cols.refresh_token):
        setattr(client, cols.connected_at, datetime.utcnow())
    db.add(client)
    db.commit()
    logger.info("[TOKEN_SERVICE] %s account %s selected for client %s", vendor.display_name, normalized, client.id)


def disconnect(db: Session, client: Client, vendor: Vendor, cache: Optional[RevokedTokenCache] = None) -> None:
    """Null every token-store column of `vendor` (explicit user disconnect)."""
    cols = _COLUMNS[vendor]
    for column in (cols.access_token, cols.refresh_token, cols.account_id, cols.email, cols.connected_at):
        setattr(client, column, None)
    (cache if cache is not None else revoked_token_cache).forget(vendor.value, str(client.id))
    db.add(client)
    db.commit()
    logger.info("[TOKEN_SERVICE] %s disconnected for client %s", vendor.display_name, client.id)


class TokenRefreshManager:
    """Hands out authorized access tokens for one vendor.

    WHAT:
        `get_client` refreshes the stored refresh token on every call and
        classifies failures once, at the token endpoint boundary.
    WHY:
        Google access tokens live one hour; refreshing per request keeps the
        executors stateless.

    Args:
        db: Session used to read/write the client row.
        vendor: Which integration's columns to use.
        cache: Revoked-token cache; defaults to the process-wide instance.
        oauth_factory: Builds the OAuth client; tests inject a fake.
        http_client: Passed to the default factory.
    """

    def __init__(
        self,
        db: Session,
        vendor: Vendor,
        cache: Optional[RevokedTokenCache] = None,
        oauth_factory: Optional[Callable[[Vendor], GoogleOAuthClient]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.db = db
        self.vendor = vendor
        self.cache = cache if cache is not None else revoked_token_cache
        self._oauth_factory = oauth_factory or (lambda v: build_oauth_client(v, http_client=http_client))
        self._cols = _COLUMNS[vendor]

    async def get_client(self, client_id: Union[str, UUID]) -> AuthorizedClient:
        """Return a refreshed access token and the selected account id.

        Raises:
            TokenRevokedError: cached revocation, or the refresh came back
                as a permanent authorization loss (tokens are wiped).
            IntegrationNotConnectedError: unknown client or no refresh token.
            TokenRefreshError: any other refresh failure (tokens kept).
            OAuthConfigurationError: vendor credentials missing.
        """
        name = self.vendor.display_name
        key = str(client_id)

        if self.cache.is_revoked(self.vendor.value, key):
            logger.info("[TOKEN_SERVICE] %s refresh skipped for %s: revoked recently", name, key)
            raise TokenRevokedError(name)

        client = load_client(self.db, client_id)
        if client is None:
            raise IntegrationNotConnectedError("Client not found", vendor=name)

        stored_refresh = getattr(client, self._cols.refresh_token)
        if not stored_refresh:
            raise IntegrationNotConnectedError(f"{name} is not connected for this client", vendor=name)

        try:
            refresh_token = decrypt_secret(stored_refresh, context=_label(client, self.vendor, "refresh"))
        except ValueError:
            raise IntegrationNotConnectedError(
                f"{name} credentials are unreadable. Please reconnect {name}.", vendor=name
            )

        oauth = self._oauth_factory(self.vendor)

        try:
            access_token = await oauth.refresh_access_token(refresh_token)
        except OAuthTokenError as exc:
            kind = classify_oauth_error(exc.error_code, exc.error_description, str(exc))
            if kind == VendorErrorKind.permanent_auth_loss:
                logger.warning("[TOKEN_SERVICE] %s refresh token revoked for client %s", name, key)
                self.cache.mark_revoked(self.vendor.value, key)
                capture_message(
                    f"{name} refresh token revoked", level="warning", extra={"client_id": key, "vendor": self.vendor.value},
                )
                self._clear_tokens(client)
                raise TokenRevokedError(name) from exc

            if exc.http_status in (400, 401):
                # Unrecognized auth-looking failure; signature list may need updating
                logger.warning(
                    "[TOKEN_SERVICE] %s refresh failed with %s but no revocation signature matched: %s",
                    name, exc.http_status, exc,
                )
            else:
                logger.error("[TOKEN_SERVICE] %s refresh failed for client %s: %s", name, key, exc)
            raise TokenRefreshError(name, detail=str(exc)) from exc

        self._persist_if_changed(client, access_token)
        return AuthorizedClient(
            client_id=key,
            vendor=self.vendor,
            access_token=access_token,
            account_id=getattr(client, self._cols.account_id),
        )

    def _persist_if_changed(self, client: Client, access_token: str) -> None:
        stored = getattr(client, self._cols.access_token)
        if stored:
            try:
                if decrypt_secret(stored, context=_label(client, self.vendor, "access")) == access_token:
                    return
            except ValueError:
                pass  # unreadable value is overwritten below
        setattr(client, self._cols.access_token, encrypt_secret(access_token, context=_label(client, self.vendor, "access")))
        self.db.add(client)
        self.db.commit()
        logger.debug("[TOKEN_SERVICE] Persisted refreshed %s access token for %s", self.vendor.display_name, client.id)

    def _clear_tokens(self, client: Client) -> None:
        """Wipe tokens and connected_at; the account id is kept for reconnects."""
        for column in (self._cols.access_token, self._cols.refresh_token, self._cols.connected_at):
            setattr(client, column, None)
        try:
            self.db.add(client)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.error("[TOKEN_SERVICE] Failed to clear revoked %s tokens for %s: %s", self.vendor.display_name, client.id, exc)
            capture_exception(exc, extra={"client_id": str(client.id), "vendor": self.vendor.value})
