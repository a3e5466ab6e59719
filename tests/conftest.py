"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Ensure valid secrets are always set for test runs.
# This must happen before any import of playstake.api.deps which validates
# the JWT secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
_TEST_CHALLENGE_KEY = "test-challenge-key-for-pytest-" + "y" * 40
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("CHALLENGE_ENCRYPTION_KEY", _TEST_CHALLENGE_KEY)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402

from playstake.config import WagerConfig  # noqa: E402
from playstake.database.models import Base  # noqa: E402
from playstake.database.store import SqlDocumentStore  # noqa: E402
from playstake.engine.crypto import ChallengeCodec  # noqa: E402
from playstake.services.challenge_service import ChallengeService  # noqa: E402
from playstake.services.ledger import EscrowLedger  # noqa: E402
from playstake.services.notifications import LoggingNotificationSink  # noqa: E402

# Low KDF cost keeps the suite fast; the cipher is unchanged.
TEST_KDF_ITERATIONS = 1_000

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


class FakeClock:
    """Controllable UTC clock.  Call it to read; ``advance`` to move on."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all PlayStake tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the rate limiter and the
    scheduler).
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
def store(db_engine: Engine) -> SqlDocumentStore:
    return SqlDocumentStore(db_engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> WagerConfig:
    return WagerConfig(kdf_iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def codec() -> ChallengeCodec:
    return ChallengeCodec(_TEST_CHALLENGE_KEY, iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def ledger(store: SqlDocumentStore, clock: FakeClock) -> EscrowLedger:
    return EscrowLedger(store, clock=clock)


@pytest.fixture
def notifier() -> LoggingNotificationSink:
    return LoggingNotificationSink()


@pytest.fixture
def service(store, codec, config, ledger, notifier, clock) -> ChallengeService:
    return ChallengeService(store, codec, config, ledger=ledger, notifier=notifier, clock=clock)


@pytest.fixture
def fund(ledger: EscrowLedger):
    """Factory: open a wallet for *user_id* holding *amount*."""

    def _fund(user_id: str, amount: int) -> None:
        ledger.open_wallet(user_id)
        if amount:
            ledger.credit(user_id, amount, "deposit")

    return _fund


def make_create_payload(challenged_id: str = "bob", bet: int = 100, **overrides) -> dict:
    payload = {
        "challengedId": challenged_id,
        "gameRef": "tetris",
        "gameTitle": "Tetris",
        "betAmount": bet,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_user_token(sub: str = "alice") -> str:
    import jwt

    from playstake.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": sub}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def make_admin_token(sub: str = "ops-admin", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from playstake.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(db_engine, service, ledger, config, codec):
    """FastAPI TestClient wired to the in-memory store.

    Lifespan does not run (no ``with`` block), so the scheduler stays off
    and every dependency that would touch the real environment is
    overridden.
    """
    from fastapi.testclient import TestClient

    from playstake.api import deps
    from playstake.api.main import app
    from playstake.api.rate_limit import DbRateLimiter, get_rate_limiter

    limiter = DbRateLimiter(config.rate_limits, engine=db_engine)
    app.dependency_overrides[deps.get_challenge_service] = lambda: service
    app.dependency_overrides[deps.get_ledger] = lambda: ledger
    app.dependency_overrides[deps.get_config] = lambda: config
    app.dependency_overrides[deps.get_codec] = lambda: codec
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
