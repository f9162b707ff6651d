"""
tests/conftest.py -- Shared test fixtures for authkeeper unit and integration tests.

This module provides:
  - FakeClock: a settable time source injected into AuthService
  - RecordingEmailSender: captures outbound recovery tokens instead of sending
  - store / clock / outbox / service: a fresh in-memory AuthService per test
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - api_client: TestClient plus the service behind it, for API integration tests

Design: Unit tests use plain 'sqlite:///:memory:' -- they run in one thread,
and SQLAlchemy keeps one connection per thread for :memory: URLs. API tests
use a named shared-memory URI (file:name?mode=memory&cache=shared&uri=true)
because TestClient runs sync route handlers in a thread pool, and a plain
:memory: DB is per-connection.

The DEBUG env var must be set before any api/ or core/ import so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789"


class FakeClock:
    """Callable time source. Starts at a fixed instant; tests move it forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailSender:
    """EmailSender that keeps (kind, to_email, token) tuples in .sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send_password_reset(self, to_email: str, name: str, token: str) -> None:
        self.sent.append(("password_reset", to_email, token))

    def send_email_verification(self, to_email: str, name: str, token: str) -> None:
        self.sent.append(("email_verify", to_email, token))

    def last_token(self, kind: str) -> str:
        return [token for k, _to, token in self.sent if k == kind][-1]


def make_settings(**overrides) -> Settings:
    """Settings with a fixed key and the cheapest bcrypt cost."""
    values = {"secret_key": TEST_SECRET_KEY, "bcrypt_rounds": 4}
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit-test fixtures -- fresh in-memory database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def outbox() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def service(store: AuthStore, settings: Settings, outbox: RecordingEmailSender, clock: FakeClock) -> AuthService:
    return AuthService(store, settings, email_sender=outbox, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes hit
    the isolated test DB rather than DATABASE_URL.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = service.store
        app.state.auth_service = service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthService, RecordingEmailSender], None, None]:
    """Yield (client, service, outbox) for API integration tests.

    One client per test module. Tests share the database, so each test uses
    its own email addresses.
    """
    store = AuthStore("sqlite:///file:test_auth_api?mode=memory&cache=shared&uri=true")
    outbox = RecordingEmailSender()
    service = AuthService(store, make_settings(), email_sender=outbox)

    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service, outbox

    store.close()


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Clear slowapi's in-memory counters so per-IP limits never leak between tests."""
    limiter.reset()
