"""FastAPI application entrypoint.

Configures CORS, error tracking, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .utils.env import load_env_file

load_env_file()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings  # noqa: E402
from .routers import financial as financial_router  # noqa: E402
from .routers import integrations as integrations_router  # noqa: E402
from .routers import reports as reports_router  # noqa: E402
from .routers import stripe_webhook as stripe_webhook_router  # noqa: E402
from .telemetry import init_observability  # noqa: E402
from . import schemas  # noqa: E402

DEV_FRONTEND_ORIGIN = "http://localhost:5173"


def create_app() -> FastAPI:
    app = FastAPI(
        title="SEO Dashboard API",
        description="""
        Backend for the agency SEO dashboard.

        This API provides endpoints for:
        - Connecting client Google Ads and GA4 accounts (OAuth 2.0)
        - Google Ads campaign, ad group, keyword and conversion reports
        - GA4 traffic reports
        - Agency financial overview (Stripe MRR, subscription activity)
        - DataForSEO account usage
        - Stripe subscription webhooks

        ## Authentication

        JWT bearer token in the `Authorization` header or the `access_token` cookie.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto so OAuth redirect URIs keep https behind a proxy
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is comma-separated
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    if DEV_FRONTEND_ORIGIN not in allowed_origins:
        allowed_origins.append(DEV_FRONTEND_ORIGIN)
    frontend_url = settings.FRONTEND_URL.rstrip("/")
    if frontend_url and frontend_url not in allowed_origins:
        allowed_origins.append(frontend_url)

    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    status = init_observability()
    logger.info(f"[STARTUP] Observability: {status}")

    app.include_router(integrations_router.router)
    app.include_router(reports_router.router)
    app.include_router(financial_router.router)
    app.include_router(stripe_webhook_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="Unauthenticated liveness check for load balancers.",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
