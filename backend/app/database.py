"""Database engine and request-scoped sessions.

WHAT:
    Builds the SQLAlchemy engine from DATABASE_URL and exposes `get_db`,
    the FastAPI dependency every router uses.

WHY:
    Tests override `get_db` with an in-memory SQLite session; token refresh
    writes and webhook updates go through the same request session as the
    reads that preceded them.

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - app/tests/conftest.py (override)
"""

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.utils.env import get_env, load_env_file


def _database_url() -> str:
    url = get_env("DATABASE_URL")
    if url is None:
        load_env_file()
        url = get_env("DATABASE_URL")
    if url is None:
        raise RuntimeError("DATABASE_URL is not set. Add it to backend/.env or export it.")
    # SQLAlchemy 2.x rejects the legacy scheme some hosts still hand out
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def build_engine(url: str) -> Engine:
    """SQLite (tests, local) gets a thread-shareable connection; Postgres a recycled pool."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_size=10, max_overflow=20, pool_recycle=3600, pool_pre_ping=True)


DATABASE_URL = _database_url()
engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

# Single declarative registry lives in app.models
from .models import Base  # noqa: E402,F401


def get_db() -> Generator[Session, None, None]:
    """Yield a session for one request and close it afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
