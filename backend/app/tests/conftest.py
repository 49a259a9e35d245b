"""Pytest configuration for app integration tests

WHAT: Provides shared fixtures for HTTP endpoint and service-level tests
WHY: Ensures consistent test setup, database isolation, and vendor fakes
REFERENCES:
    - app/main.py: FastAPI application
    - app/database.py: Database configuration
    - app/deps.py: Dependency injection (get_db, service providers)
"""

import os
from datetime import datetime
from typing import Callable, Generator, List

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string (app.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")


# ============================================================================
# Environment Fixtures
# ============================================================================

VENDOR_ENV = {
    "GOOGLE_ADS_CLIENT_ID": "ads-client-id",
    "GOOGLE_ADS_CLIENT_SECRET": "ads-client-secret",
    "GOOGLE_ADS_DEVELOPER_TOKEN": "dev-token",
    "GA4_CLIENT_ID": "ga4-client-id",
    "GA4_CLIENT_SECRET": "ga4-client-secret",
    "BACKEND_URL": "http://api.test",
    "FRONTEND_URL": "http://app.test",
}

UNSET_ENV = [
    "GOOGLE_ADS_REDIRECT_URI",
    "GA4_REDIRECT_URI",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "DATAFORSEO_BASE64",
    "SENTRY_DSN",
    "STRIPE_PRICE_PLAN_ENTERPRISE",
    "STRIPE_PRICE_PLAN_PRO",
    "STRIPE_PRICE_PLAN_GROWTH",
    "STRIPE_PRICE_PLAN_STARTER",
    "STRIPE_PRICE_PLAN_SOLO",
    "STRIPE_PRICE_PLAN_BUSINESS_PRO",
    "STRIPE_PRICE_PLAN_BUSINESS_LITE",
]


@pytest.fixture(autouse=True)
def vendor_env(monkeypatch):
    """Known vendor configuration; billing vendors start unconfigured."""
    for name, value in VENDOR_ENV.items():
        monkeypatch.setenv(name, value)
    for name in UNSET_ENV:
        monkeypatch.delenv(name, raising=False)

    from app.deps import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def clear_revoked_cache():
    """The process-wide revoked-token cache must not leak between tests."""
    from app.services.revoked_token_cache import revoked_token_cache

    revoked_token_cache.clear()
    yield
    revoked_token_cache.clear()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    # StaticPool: TestClient runs sync endpoints in a worker thread and they
    # must see the same in-memory database.
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from app.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI test application."""
    from app.main import create_app

    test_app = create_app()

    from app.database import get_db

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

def _add(session: Session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


@pytest.fixture
def test_agency(test_db_session):
    from app.models import Agency

    return _add(test_db_session, Agency(name="Acme Agency", stripe_customer_id="cus_acme"))


@pytest.fixture
def other_agency(test_db_session):
    from app.models import Agency

    return _add(test_db_session, Agency(name="Other Agency", stripe_customer_id="cus_other"))


@pytest.fixture
def test_client_record(test_db_session, test_agency):
    """A client of `test_agency` with no integrations connected."""
    from app.models import Client

    return _add(test_db_session, Client(name="Acme Plumbing", domain="acmeplumbing.com", agency_id=test_agency.id))


@pytest.fixture
def make_user(test_db_session) -> Callable:
    """Factory: make_user(RoleEnum.agency, agency=..., client=...)."""
    from app.models import User

    counter = {"n": 0}

    def _make(role, agency=None, client=None):
        counter["n"] += 1
        return _add(
            test_db_session,
            User(
                email=f"{role.value.lower()}{counter['n']}@example.com",
                name=f"{role.value.title()} User",
                role=role,
                agency_id=agency.id if agency else None,
                client_id=client.id if client else None,
            ),
        )

    return _make


@pytest.fixture
def auth_headers_for() -> Callable:
    """Build Authorization headers for a user."""
    from app.security import create_access_token

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.email)}"}

    return _headers


@pytest.fixture
def agency_user(make_user, test_agency):
    from app.models import RoleEnum

    return make_user(RoleEnum.agency, agency=test_agency)


@pytest.fixture
def super_admin_user(make_user):
    from app.models import RoleEnum

    return make_user(RoleEnum.super_admin)


@pytest.fixture
def connect_client(test_db_session) -> Callable:
    """Store encrypted tokens and an account id so the vendor counts as connected."""
    from app.security import encrypt_secret
    from app.services.oauth_client import Vendor

    def _connect(client, vendor=Vendor.google_ads, account_id="1234567890", refresh_token="refresh-1",
                 access_token="access-old"):
        prefix = vendor.value
        id_column = "google_ads_customer_id" if vendor == Vendor.google_ads else "ga4_property_id"
        setattr(client, f"{prefix}_refresh_token", encrypt_secret(refresh_token, context="test"))
        setattr(client, f"{prefix}_access_token", encrypt_secret(access_token, context="test"))
        setattr(client, id_column, account_id)
        setattr(client, f"{prefix}_account_email", "owner@acmeplumbing.com")
        setattr(client, f"{prefix}_connected_at", datetime.utcnow())
        test_db_session.add(client)
        test_db_session.commit()
        return client

    return _connect


# ============================================================================
# Vendor Fakes
# ============================================================================

class FakeOAuthClient:
    """Stands in for GoogleOAuthClient; records refresh calls."""

    def __init__(self, vendor, access_token="access-new", refresh_error=None, grant=None, exchange_error=None):
        self.vendor = vendor
        self.access_token = access_token
        self.refresh_error = refresh_error
        self.grant = grant
        self.exchange_error = exchange_error
        self.refresh_calls: List[str] = []
        self.exchanged_codes: List[str] = []

    def authorization_url(self, state):
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def refresh_access_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.access_token

    async def exchange_code(self, code):
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.grant


@pytest.fixture
def fake_oauth():
    """A FakeOAuthClient plus a factory with the `build_oauth_client` signature."""
    from app.services.oauth_client import Vendor

    fake = FakeOAuthClient(Vendor.google_ads)

    def factory(vendor, http_client=None):
        fake.vendor = vendor
        return fake

    fake.factory = factory
    return fake


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an AsyncClient whose requests are answered by `handler`."""

    def _build(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build


# ============================================================================
# Notes
# ============================================================================
#
# USAGE:
#
# # HTTP test with a role
# def test_status(client, agency_user, auth_headers_for, test_client_record):
#     response = client.get(
#         f"/api/clients/{test_client_record.id}/google-ads/status",
#         headers=auth_headers_for(agency_user),
#     )
#     assert response.status_code == 200
#
# # Service test with faked vendor HTTP
# def test_ga4(mock_http):
#     http = mock_http(lambda request: httpx.Response(200, json={"rows": []}))
#
# ============================================================================
