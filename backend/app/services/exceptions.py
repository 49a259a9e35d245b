"""
Integration Exceptions
======================

Exception types raised by the vendor integration layer (OAuth, Google Ads,
GA4, DataForSEO) and mapped to HTTP responses by the routers.

WHY THIS FILE EXISTS
--------------------
Vendor calls fail in ways that need different handling upstream:
- Missing credentials in the deployment (operator must fix configuration)
- Integration never connected (user must run the OAuth flow)
- Refresh token revoked (user must reconnect; stored tokens were wiped)
- Transient refresh failure (stored tokens kept; retry later)
- Google Ads manager/child permission topology (no candidate header worked)
- Any other non-2xx vendor response

RELATED FILES
-------------
- app/services/token_service.py: Raises token lifecycle errors
- app/services/google_ads_client.py: Raises permission and API errors
- app/routers/integrations.py: Maps these to HTTP status codes
"""

from typing import List, Optional


class IntegrationError(Exception):
    """
    Base exception for all vendor integration errors.

    USAGE:
        try:
            authorized = await manager.get_client(client_id)
        except IntegrationError as e:
            raise HTTPException(status_code=e.status_code, detail=e.to_user_message())
    """

    status_code = 502

    def __init__(self, message: str, vendor: Optional[str] = None):
        super().__init__(message)
        self.vendor = vendor
        self.message = message

    def to_user_message(self) -> str:
        """String suitable for display to end users."""
        return self.message


class OAuthConfigurationError(IntegrationError):
    """
    Vendor credentials are missing from the environment.

    ATTRIBUTES:
        missing: Exact environment variable names that are unset
    """

    status_code = 500

    def __init__(self, vendor: str, missing: List[str], message: Optional[str] = None):
        self.missing = list(missing)
        if message is None:
            message = f"{vendor} OAuth is not configured. Missing environment variables: {', '.join(self.missing)}"
        super().__init__(message, vendor)


class IntegrationNotConnectedError(IntegrationError):
    """No refresh token (or account selection) is stored for this client."""

    status_code = 400


class TokenRevokedError(IntegrationError):
    """
    Refresh token is permanently unusable (revoked, expired, invalid_grant).

    RECOVERY:
        Stored tokens have already been cleared; the user must reconnect.
    """

    status_code = 401

    def __init__(self, vendor: str, message: Optional[str] = None):
        if message is None:
            message = f"{vendor} token expired or revoked. Please reconnect {vendor}."
        super().__init__(message, vendor)


class TokenRefreshError(IntegrationError):
    """
    Refresh failed for a reason that may be transient.

    RECOVERY:
        Stored tokens are kept; the next request retries the refresh.
    """

    status_code = 401

    def __init__(self, vendor: str, message: Optional[str] = None, detail: Optional[str] = None):
        if message is None:
            message = f"{vendor} token refresh failed. Please reconnect {vendor}."
        super().__init__(message, vendor)
        self.detail = detail


class OAuthTokenError(IntegrationError):
    """
    Non-2xx response from the OAuth token endpoint.

    ATTRIBUTES:
        http_status: Status code of the token endpoint response (None on network error)
        error_code: The `error` field (e.g. "invalid_grant")
        error_description: The `error_description` field
    """

    def __init__(
        self,
        message: str,
        vendor: Optional[str] = None,
        http_status: Optional[int] = None,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None,
    ):
        super().__init__(message, vendor)
        self.http_status = http_status
        self.error_code = error_code
        self.error_description = error_description


class VendorApiError(IntegrationError):
    """
    Non-2xx response from a vendor data API.

    ATTRIBUTES:
        http_status: Vendor response status code
    """

    def __init__(self, message: str, vendor: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message, vendor)
        self.http_status = http_status


class GoogleAdsPermissionError(VendorApiError):
    """
    Every login-customer-id candidate failed with a permission error.

    ATTRIBUTES:
        attempted_login_ids: Manager ids tried as `login-customer-id`
    """

    status_code = 403

    def __init__(self, message: str, attempted_login_ids: Optional[List[str]] = None, http_status: Optional[int] = 403):
        super().__init__(message, "Google Ads", http_status)
        self.attempted_login_ids = list(attempted_login_ids or [])
