"""
Telemetry Module
================

Error reporting for the dashboard API (Sentry, see sentry.py).

Usage:
    from app.telemetry import capture_exception, init_observability

    status = init_observability()   # {"sentry": True} when SENTRY_DSN is set
"""

from app.telemetry.sentry import (
    capture_exception,
    capture_message,
    init_sentry,
    set_user_context,
)


def init_observability() -> dict:
    """Start every reporting backend; returns which ones are live."""
    return {"sentry": init_sentry()}


__all__ = [
    "init_observability",
    "init_sentry",
    "set_user_context",
    "capture_exception",
    "capture_message",
]
