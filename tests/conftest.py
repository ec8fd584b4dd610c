"""
tests/conftest.py -- Shared test fixtures for Gatekeeper unit and integration tests.

This module provides:
  - FakeClock / RecordingNotifier: deterministic time and captured emails
  - make_orchestrator: fully wired AuthOrchestrator on an isolated in-memory DB
  - make_user: register (and by default verify) an account through the engine
  - _patch_lifespan(): wires a test orchestrator into app.state, bypassing real startup
  - api_client: TestClient with an admin session token for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because every store owns its own engine and TestClient runs route handlers in
a thread pool. Plain :memory: DBs are per-connection and would present a
blank schema to each store and worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The environment must be prepared before any gatekeeper import: get_settings()
is cached on first call and api/limiter.py reads LOGIN_RATE_LIMIT at import.
"""

from __future__ import annotations

import asyncio
import os
import random
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# bcrypt cost 4 keeps the suite fast; only accepted because DEBUG is set
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
# TestClient sends Host: testserver
os.environ.setdefault("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.oauth import LinkedAccountService
from auth.service import AuthOrchestrator, create_orchestrator
from core.config import get_settings

TEST_PASSWORD = "Sn0wman!2024"

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Injectable clock. Starts at a fixed instant and only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Notifier that keeps every message so tests can pick the tokens out."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str | None]] = []

    def send_verification_email(self, email: str, token: str) -> None:
        self.sent.append(("verification", email, token))

    def send_password_reset_email(self, email: str, token: str) -> None:
        self.sent.append(("reset", email, token))

    def send_password_change_confirmation(self, email: str) -> None:
        self.sent.append(("password_changed", email, None))

    def messages(self, kind: str, email: str | None = None) -> list[tuple[str, str, str | None]]:
        return [m for m in self.sent if m[0] == kind and (email is None or m[1] == email)]

    def last_token(self, kind: str, email: str | None = None) -> str:
        matching = self.messages(kind, email)
        assert matching, f"no {kind} message sent to {email or 'anyone'}"
        return matching[-1][2]


def memory_db_url(prefix: str = "gk") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def db_url() -> str:
    return memory_db_url()


@pytest.fixture
def make_orchestrator(db_url, clock, notifier):
    """Factory for orchestrators sharing this test's DB, clock and notifier.

    Keyword arguments override individual Settings fields, e.g.
    make_orchestrator(login_max_attempts_per_account=2).
    """
    created: list[AuthOrchestrator] = []

    def _make(**overrides) -> AuthOrchestrator:
        settings = get_settings().model_copy(update=overrides) if overrides else get_settings()
        orch = create_orchestrator(
            settings, db_url=db_url, clock=clock, notifier=notifier, rng=random.Random(1234)
        )
        created.append(orch)
        return orch

    yield _make
    for orch in created:
        orch.close()


@pytest.fixture
def orchestrator(make_orchestrator) -> AuthOrchestrator:
    return make_orchestrator()


@pytest.fixture
def make_user(orchestrator, notifier):
    """Register an account through the engine and (by default) verify its email."""

    def _make(email: str = "ada@example.com", password: str = TEST_PASSWORD, verify: bool = True):
        result = orchestrator.register(email, password, name=email.split("@")[0])
        assert result.ok, result.message
        if verify:
            verified = orchestrator.verify_email(notifier.last_token("verification", email))
            assert verified.ok, verified.message
        return orchestrator.users.get_by_id(result.value.id)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(orchestrator: AuthOrchestrator, links: LinkedAccountService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test orchestrator into app.state so TestClient
    routes see an isolated test DB rather than the production database. Also
    mocks the OAuth registry to prevent real network calls.

    The maintenance_task is a long-sleeping coroutine that keeps asyncio
    happy (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.orchestrator = orchestrator
        app.state.linked_accounts = links
        app.state.oauth = MagicMock()
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store. The
    admin account (admin@example.com / TEST_PASSWORD) is registered, verified
    and logged in through the engine before the client starts; pass the token
    as a Bearer header.

    Per-IP engine limits are raised because every TestClient request comes
    from the same address.
    """
    settings = get_settings().model_copy(
        update={
            "login_max_attempts_per_ip": 10_000,
            "register_max_per_ip": 10_000,
            "reset_max_per_ip": 10_000,
            "token_max_attempts_per_ip": 10_000,
        }
    )
    orchestrator = create_orchestrator(settings, db_url=memory_db_url("api"), notifier=RecordingNotifier())
    links = LinkedAccountService(orchestrator.users, orchestrator.audit, settings)

    registered = orchestrator.register("admin@example.com", TEST_PASSWORD, name="Admin")
    assert registered.ok, registered.message
    orchestrator.verify_email(orchestrator.notifier.last_token("verification", "admin@example.com"))
    grant = orchestrator.login("admin@example.com", TEST_PASSWORD).value

    app.router.lifespan_context = _patch_lifespan(orchestrator, links)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, grant.token, grant.user.id

    orchestrator.close()
