"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of keygate.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite renders JSONB as TEXT; BigInteger becomes INTEGER so autoincrement
# and rowid aliasing behave.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from keygate.config import KeyGateConfig  # noqa: E402
from keygate.database.models import Base  # noqa: E402
from keygate.services.relay import RelayResult  # noqa: E402

_jsonb_sqlite_registered = False

ADMIN_ID = 900_000_000_000_000_001
OTHER_ADMIN_ID = 900_000_000_000_000_002
USER_ID = 100_000_000_000_000_001
OTHER_USER_ID = 100_000_000_000_000_002

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# Helper to run async code without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeRelay:
    """Records every send; optionally reports failure or raises."""

    def __init__(self, *, deliver: bool = True, raise_exc: Exception | None = None) -> None:
        self.deliver = deliver
        self.raise_exc = raise_exc
        self.sent: list[tuple[int, str]] = []

    async def send(self, user_id: int, text: str) -> RelayResult:
        self.sent.append((user_id, text))
        if self.raise_exc is not None:
            raise self.raise_exc
        if not self.deliver:
            return RelayResult.failed("dm_closed")
        return RelayResult.ok()

    def texts_for(self, user_id: int) -> list[str]:
        return [text for uid, text in self.sent if uid == user_id]


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all KeyGate tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def cfg() -> KeyGateConfig:
    return KeyGateConfig(
        service_name="KeyGate Test",
        bot_prefix="!",
        admin_user_ids=frozenset({ADMIN_ID, OTHER_ADMIN_ID}),
        api_port=8000,
        default_grant_days=30,
        support_contact="@support",
        stale_funnel_hours=24,
        reminder_interval_minutes=60,
    )


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


def make_admin_token(sub: str = str(ADMIN_ID)) -> str:
    """Create an admin JWT.  Usable as a factory function from tests."""
    import jwt

    from keygate.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def admin_token() -> str:
    return make_admin_token()
