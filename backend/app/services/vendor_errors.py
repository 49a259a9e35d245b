"""Vendor error classification.

WHAT:
    Maps vendor error responses to a small error-kind enum exactly once, at
    the boundary where the response is received. Downstream code branches
    on `VendorErrorKind`, never on raw strings.

WHY:
    Only a permanent authorization loss may wipe stored credentials; a
    network blip or rate limit must leave a possibly-valid connection alone.
    Google Ads manager/child permission failures drive the
    login-customer-id retry loop instead of failing the request.

REFERENCES:
    - https://developers.google.com/identity/protocols/oauth2/web-server#exchange-errors
    - https://developers.google.com/google-ads/api/docs/concepts/call-structure#cid
    - app/services/token_service.py (consumes classify_oauth_error)
    - app/services/google_ads_client.py (consumes classify_google_ads_response)
"""

from __future__ import annotations

import enum
import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class VendorErrorKind(str, enum.Enum):
    permanent_auth_loss = "PERMANENT_AUTH_LOSS"
    transient = "TRANSIENT"
    permission_topology = "PERMISSION_TOPOLOGY"
    unknown = "UNKNOWN"


# OAuth token endpoint `error` codes that mean the grant is gone for good.
PERMANENT_OAUTH_ERROR_CODES = ("invalid_grant", "unauthorized_client")
# Substrings of `error_description` that mean the same.
PERMANENT_OAUTH_DESCRIPTION_MARKERS = ("expired", "revoked")

# Google Ads body substrings that indicate a manager/child access problem.
GOOGLE_ADS_PERMISSION_MARKERS = (
    "USER_PERMISSION_DENIED",
    "PERMISSION_DENIED",
    "login-customer-id",
    "login_customer_id",
    "loginCustomerId",
)

MAX_ERROR_TEXT = 500


def classify_oauth_error(
    error_code: Optional[str] = None,
    error_description: Optional[str] = None,
    message: Optional[str] = None,
) -> VendorErrorKind:
    """Classify a failed refresh-token exchange.

    Args:
        error_code: `error` field of the token endpoint body.
        error_description: `error_description` field of the body.
        message: Exception message, for failures without a JSON body.

    Returns:
        PERMANENT_AUTH_LOSS for invalid_grant / revoked / expired grants,
        TRANSIENT for everything else.
    """
    code = (error_code or "").strip().lower()
    if code in PERMANENT_OAUTH_ERROR_CODES:
        return VendorErrorKind.permanent_auth_loss

    if message and "invalid_grant" in message:
        return VendorErrorKind.permanent_auth_loss

    description = (error_description or "").lower()
    if any(marker in description for marker in PERMANENT_OAUTH_DESCRIPTION_MARKERS):
        return VendorErrorKind.permanent_auth_loss

    return VendorErrorKind.transient


def classify_google_ads_response(status_code: int, body_text: str = "") -> VendorErrorKind:
    """Classify a non-2xx Google Ads REST response."""
    if status_code == 403:
        return VendorErrorKind.permission_topology
    if body_text and any(marker in body_text for marker in GOOGLE_ADS_PERMISSION_MARKERS):
        return VendorErrorKind.permission_topology
    if status_code == 401:
        return VendorErrorKind.permanent_auth_loss
    if status_code == 429 or status_code >= 500:
        return VendorErrorKind.transient
    return VendorErrorKind.unknown


def _first_detail_message(error: dict) -> Optional[str]:
    for detail in error.get("details") or []:
        if not isinstance(detail, dict):
            continue
        for item in detail.get("errors") or []:
            if isinstance(item, dict) and item.get("message"):
                return str(item["message"])
    return None


def extract_vendor_error_message(body: Any) -> str:
    """Pull the most specific message out of a vendor error body.

    Prefers the nested per-field detail (`error.details[].errors[].message`)
    over the top-level `error.message`; falls back to the truncated raw text.
    """
    parsed = body
    if isinstance(body, (str, bytes)):
        text = body.decode("utf-8", "replace") if isinstance(body, bytes) else body
        try:
            parsed = json.loads(text)
        except ValueError:
            return text.strip()[:MAX_ERROR_TEXT]

    # searchStream errors arrive wrapped in a one-element array
    if isinstance(parsed, list) and parsed:
        parsed = parsed[0]

    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict):
            detail = _first_detail_message(error)
            if detail:
                return detail
            if error.get("message"):
                return str(error["message"])
        elif isinstance(error, str):
            description = parsed.get("error_description")
            return f"{error}: {description}" if description else error
        if parsed.get("message"):
            return str(parsed["message"])

    return json.dumps(parsed)[:MAX_ERROR_TEXT] if parsed is not None else ""


def describe_http_failure(vendor: str, status_code: int, message: str) -> str:
    """Human-readable error text; 401/403 are called out distinctly."""
    if status_code == 401:
        return f"{vendor} API authentication failed (401): {message}"
    if status_code == 403:
        return f"{vendor} API access denied (403): {message}"
    return f"{vendor} API error ({status_code}): {message}"
