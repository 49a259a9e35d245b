"""
Sentry Error Tracking
=====================

Error reporting for the dashboard API. Without SENTRY_DSN every helper
here degrades to a log line.

Related files:
- app/main.py: init at startup
- app/deps.py: user context after authentication
- app/services/token_service.py: revocations and failed token wipes
- app/routers/stripe_webhook.py, app/routers/financial.py: vendor failures

Environment Variables:
- SENTRY_DSN: project DSN
- ENVIRONMENT: environment tag (production, staging, development)
- RELEASE_VERSION: release tag (optional)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.utils.env import get_env

logger = logging.getLogger(__name__)

TRACES_SAMPLE_RATE = 0.1


def init_sentry() -> bool:
    """Initialize the SDK; True when events will be sent."""
    dsn = get_env("SENTRY_DSN")
    if not dsn:
        return False

    environment = get_env("ENVIRONMENT", "development")
    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=get_env("RELEASE_VERSION"),
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                # INFO+ as breadcrumbs, ERROR+ as events
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=TRACES_SAMPLE_RATE,
            # Vendor tokens and billing emails stay in-process
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    logger.info(f"[SENTRY] Reporting enabled ({environment})")
    return True


def set_user_context(user_id: str, email: Optional[str] = None, role: Optional[str] = None) -> None:
    """Tag subsequent events with the authenticated dashboard user."""
    if sentry_sdk.is_initialized():
        sentry_sdk.set_user({"id": user_id, "email": email, "role": role})


def _send(extra: Optional[Dict[str, Any]], emit) -> None:
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        emit()


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """Report a handled exception, e.g. a vendor outage answered with 5xx.

    Args:
        exception: The exception to report
        extra: Context such as client id, vendor or endpoint
    """
    if not sentry_sdk.is_initialized():
        logger.error(f"Exception (Sentry disabled): {exception}", extra={"context": extra})
        return
    _send(extra, lambda: sentry_sdk.capture_exception(exception))


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a notable event that is not an exception.

    Example:
        capture_message("Google Ads refresh token revoked", level="warning", extra={"client_id": client_id})
    """
    if not sentry_sdk.is_initialized():
        logger.log(logging.getLevelName(level.upper()), f"Message (Sentry disabled): {message}")
        return
    _send(extra, lambda: sentry_sdk.capture_message(message, level=level))
