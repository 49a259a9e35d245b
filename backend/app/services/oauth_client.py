"""Google OAuth 2.0 client factory for the Google Ads and GA4 integrations.

WHAT:
    Builds a per-vendor OAuth client from environment configuration and
    implements the three token endpoint interactions the integrations need:
    consent URL, authorization-code exchange and refresh-token exchange.

WHY:
    - Fail fast with the exact missing variable names instead of an opaque
      vendor 400 when a deployment lacks credentials.
    - Google validates that the consent step and the code exchange use the
      identical redirect URI, so the client resolves it once and both
      operations read it from the same attribute.

REFERENCES:
    - https://developers.google.com/identity/protocols/oauth2/web-server
    - app/services/token_service.py (refresh consumer)
    - app/routers/integrations.py (consent URL and callback)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlencode

import httpx

from app.services.exceptions import OAuthConfigurationError, OAuthTokenError
from app.utils.env import get_env, missing_env
from app.utils.http import async_http_client

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
USERINFO_EMAIL_SCOPE = "https://www.googleapis.com/auth/userinfo.email"
DEFAULT_BACKEND_URL = "http://localhost:5000"
POPUP_STATE_SUFFIX = "|popup"


class Vendor(str, enum.Enum):
    google_ads = "google_ads"
    ga4 = "ga4"

    @property
    def display_name(self) -> str:
        return _VENDOR_CONFIGS[self].display_name

    @property
    def env_prefix(self) -> str:
        return _VENDOR_CONFIGS[self].env_prefix


@dataclass(frozen=True)
class _VendorConfig:
    display_name: str
    env_prefix: str
    callback_path: str
    scopes: Tuple[str, ...]


_VENDOR_CONFIGS = {
    Vendor.google_ads: _VendorConfig(
        display_name="Google Ads",
        env_prefix="GOOGLE_ADS",
        callback_path="/api/clients/google-ads/callback",
        scopes=("https://www.googleapis.com/auth/adwords", USERINFO_EMAIL_SCOPE),
    ),
    Vendor.ga4: _VendorConfig(
        display_name="GA4",
        env_prefix="GA4",
        callback_path="/api/clients/ga4/callback",
        scopes=("https://www.googleapis.com/auth/analytics.readonly", USERINFO_EMAIL_SCOPE),
    ),
}


@dataclass
class TokenGrant:
    """Result of a successful authorization-code exchange."""

    access_token: str
    refresh_token: str
    email: Optional[str] = None


def build_state(client_id: str, popup: bool = False) -> str:
    """Encode the OAuth `state`: the client id, suffixed `|popup` for popup flows."""
    return f"{client_id}{POPUP_STATE_SUFFIX}" if popup else str(client_id)


def parse_state(state: str) -> Tuple[str, bool]:
    """Inverse of `build_state`: returns (client_id, popup)."""
    if state.endswith(POPUP_STATE_SUFFIX):
        return state[: -len(POPUP_STATE_SUFFIX)], True
    return state, False


class GoogleOAuthClient:
    """OAuth2 client bound to one vendor and one redirect URI."""

    def __init__(
        self,
        vendor: Vendor,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.vendor = vendor
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = _VENDOR_CONFIGS[vendor].scopes
        self._http_client = http_client

    def authorization_url(self, state: str) -> str:
        """Consent screen URL; offline access + forced consent so Google returns a refresh token."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _post_token(self, data: dict) -> dict:
        label = self.vendor.display_name
        try:
            async with async_http_client(self._http_client) as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise OAuthTokenError(f"{label} token endpoint unreachable: {exc}", vendor=label) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            error_code = body.get("error")
            error_description = body.get("error_description")
            raise OAuthTokenError(
                f"{label} token endpoint returned {response.status_code}: "
                f"{error_code or 'unknown_error'} {error_description or ''}".strip(),
                vendor=label,
                http_status=response.status_code,
                error_code=error_code,
                error_description=error_description,
            )
        return body

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for access + refresh tokens.

        Raises:
            OAuthTokenError: Token endpoint failure, or a response missing
                either token (a consent without offline access).
        """
        body = await self._post_token(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        access_token = body.get("access_token")
        refresh_token = body.get("refresh_token")
        if not access_token or not refresh_token:
            raise OAuthTokenError(
                f"Failed to obtain access and refresh tokens from {self.vendor.display_name}",
                vendor=self.vendor.display_name,
            )

        email = await self.fetch_account_email(access_token)
        logger.info(
            "[OAUTH] %s code exchanged (refresh_token_length=%d, email=%s)",
            self.vendor.display_name, len(refresh_token), "yes" if email else "no",
        )
        return TokenGrant(access_token=access_token, refresh_token=refresh_token, email=email)

    async def refresh_access_token(self, refresh_token: str) -> str:
        body = await self._post_token(
            {
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            }
        )
        access_token = body.get("access_token")
        if not access_token:
            raise OAuthTokenError(
                f"{self.vendor.display_name} token endpoint returned no access token",
                vendor=self.vendor.display_name,
            )
        return access_token

    async def fetch_account_email(self, access_token: str) -> Optional[str]:
        """Best-effort lookup of the consenting account's email; never raises."""
        try:
            async with async_http_client(self._http_client) as client:
                response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            if response.status_code >= 400:
                logger.warning("[OAUTH] userinfo lookup returned %s", response.status_code)
                return None
            return response.json().get("email")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[OAUTH] userinfo lookup failed: %s", exc)
            return None


def resolve_redirect_uri(vendor: Vendor) -> str:
    """`<PREFIX>_REDIRECT_URI`, else BACKEND_URL plus the vendor callback path."""
    explicit = get_env(f"{vendor.env_prefix}_REDIRECT_URI")
    if explicit:
        return explicit
    backend_url = (get_env("BACKEND_URL") or DEFAULT_BACKEND_URL).rstrip("/")
    return f"{backend_url}{_VENDOR_CONFIGS[vendor].callback_path}"


def build_oauth_client(vendor: Vendor, http_client: Optional[httpx.AsyncClient] = None) -> GoogleOAuthClient:
    """Build the OAuth client for `vendor` from the environment.

    Raises:
        OAuthConfigurationError: client id and/or secret unset; the error
            lists exactly the missing variable names.
    """
    required = [f"{vendor.env_prefix}_CLIENT_ID", f"{vendor.env_prefix}_CLIENT_SECRET"]
    missing = missing_env(required)
    if missing:
        logger.error("[OAUTH] %s not configured, missing %s", vendor.display_name, missing)
        raise OAuthConfigurationError(vendor.display_name, missing)

    return GoogleOAuthClient(
        vendor=vendor,
        client_id=get_env(required[0]),
        client_secret=get_env(required[1]),
        redirect_uri=resolve_redirect_uri(vendor),
        http_client=http_client,
    )
