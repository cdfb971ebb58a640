"""
tests/conftest.py -- Shared fixtures for CertGuard unit and integration tests.

This module provides:
  - clock / user_store / sink / coordinator: unit-level building blocks with a
    ManualClock, so expiry tests advance time instead of sleeping.
  - make_user(): inserts a principal with a bcrypt-hashed password.
  - api: TestClient over the real FastAPI app with a patched lifespan that
    wires an isolated store + coordinator (sharing the ManualClock) into
    app.state.

Design: the integration store uses a named shared-memory SQLite URI (not
plain :memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

Environment must be set before any auth/core import: DEBUG=true lets
get_settings() auto-generate signing keys, RATE_LIMIT_ENABLED=false keeps the
login throttle out of lockout scenarios, and ALLOWED_HOSTS admits the
TestClient's "testserver" host.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.coordinator import SecurityCoordinator, build_coordinator
from auth.events import RecentEventsSink, SecurityEventEmitter
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.clock import ManualClock
from core.config import get_settings

STRONG_PASSWORD = "Correct#Horse9"


def make_user(
    store: UserStore,
    email: str = "alice@example.com",
    password: str | None = STRONG_PASSWORD,
    role: str = "student",
    **fields,
) -> User:
    """Insert a principal and return the stored record."""
    hashed = hash_password(password) if password is not None else None
    uid = store.create_user(
        User(
            email=email,
            role=role,
            hashed_password=hashed,
            password_history=[hashed] if hashed else [],
            **fields,
        )
    )
    return store.get_by_id(uid)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def sink() -> RecentEventsSink:
    return RecentEventsSink()


@pytest.fixture
def coordinator(user_store: UserStore, clock: ManualClock, sink: RecentEventsSink) -> SecurityCoordinator:
    events = SecurityEventEmitter(sinks=[sink], clock=clock)
    return build_coordinator(get_settings(), user_store, clock=clock, events=events)


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    clock: ManualClock
    users: UserStore
    security: SecurityCoordinator
    sink: RecentEventsSink

    def login(self, email: str, password: str = STRONG_PASSWORD):
        return self.client.post("/api/v1/auth/login", json={"email": email, "password": password})

    def csrf_headers(self) -> dict[str, str]:
        resp = self.client.get("/api/v1/auth/csrf-token")
        assert resp.status_code == 200
        return {"X-CSRF-Token": resp.json()["csrfToken"]}


def _patch_lifespan(users: UserStore, security: SecurityCoordinator):
    """Replace the real lifespan: inject test stores, keep one long-sleeping sweep task."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = users
        app.state.security = security
        app.state.sweep_tasks = [asyncio.create_task(asyncio.sleep(99999))]
        yield
        for task in app.state.sweep_tasks:
            task.cancel()

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness with a fresh database, fresh stores, and a ManualClock."""
    users = UserStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    clock = ManualClock()
    sink = RecentEventsSink()
    security = build_coordinator(
        get_settings(),
        users,
        clock=clock,
        events=SecurityEventEmitter(sinks=[sink], clock=clock),
    )
    app.router.lifespan_context = _patch_lifespan(users, security)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, clock=clock, users=users, security=security, sink=sink)

    users.close()
