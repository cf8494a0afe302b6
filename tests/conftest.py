"""
tests/conftest.py -- Shared test fixtures for SchoolAdmin tests.

This module provides:
  - make_store(): creates an isolated in-memory AuthStore
  - FakeClock: injectable clock for time-dependent policy tests
  - create_user(): inserts a user with a real bcrypt hash
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient plus a Super Admin session for API integration tests
  - fresh_client: TestClient over an empty store that still needs setup

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG, BCRYPT_ROUNDS and ALLOWED_HOSTS must be set before any auth/core
import: get_settings() is cached on first call.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["localhost", "127.0.0.1", "testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.authenticator import Authenticator
from auth.models import User
from auth.seed import SUPER_ADMIN, seed_defaults
from auth.sessions import SessionPolicy
from auth.store import AuthStore
from auth.tokens import hash_password
from core.config import get_settings

# Login throttling is per client IP and every TestClient request comes from
# the same address. Lockout tests would trip it.
limiter.enabled = False

COOKIE_NAME = get_settings().session_cookie_name
ADMIN_PASSWORD = "adminpass123"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> AuthStore:
    """Create an AuthStore on a fresh named shared-memory SQLite database."""
    name = name or uuid.uuid4().hex
    return AuthStore(db_url=f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 9, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def create_user(store: AuthStore, username: str, password: str = "password123", **fields) -> int:
    fields.setdefault("email", f"{username}@school.test")
    fields.setdefault("full_name", username.title())
    return store.create_user(User(username=username, password_hash=hash_password(password), **fields))


def session_headers(raw_session_id: str) -> dict[str, str]:
    return {"Cookie": f"{COOKIE_NAME}={raw_session_id}"}


def _patch_lifespan(store: AuthStore, setup_required: bool = False):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = store
        app.state.sessions = SessionPolicy.from_settings(store)
        app.state.authenticator = Authenticator.from_settings(store)
        app.state.setup_required = setup_required
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    """Function-scoped empty store."""
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def seeded_store(store: AuthStore) -> AuthStore:
    """Store with the default roles and permissions, created by no one."""
    seed_defaults(store)
    return store


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, dict[str, str], int], None, None]:
    """Yield (client, admin_headers, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    The store is seeded with the default RBAC graph and a Super Admin
    ("testadmin" / ADMIN_PASSWORD) whose session cookie is in admin_headers.
    """
    s = make_store()
    uid = create_user(s, "testadmin", ADMIN_PASSWORD)
    role_ids = seed_defaults(s, created_by=uid)
    s.assign_role(uid, role_ids[SUPER_ADMIN], assigned_by=uid)

    app.router.lifespan_context = _patch_lifespan(s)

    with TestClient(app, raise_server_exceptions=True) as client:
        raw_id, _ = client.app.state.sessions.start(uid)
        yield client, session_headers(raw_id), uid

    s.close()


@pytest.fixture(scope="module")
def fresh_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over an empty store, still in the first-run state."""
    s = make_store()
    app.router.lifespan_context = _patch_lifespan(s, setup_required=True)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    s.close()


@pytest.fixture
def login_as(api_client):
    """Return a helper that creates a user holding the named roles and opens a session.

    Usage: headers, user_id = login_as("Viewer")
    """
    client, _, admin_id = api_client
    store: AuthStore = client.app.state.auth_store

    def _login(*role_names: str, password: str = "password123") -> tuple[dict[str, str], int]:
        uid = create_user(store, f"user_{uuid.uuid4().hex[:10]}", password)
        for name in role_names:
            store.assign_role(uid, store.get_role_by_name(name).id, assigned_by=admin_id)
        raw_id, _ = client.app.state.sessions.start(uid)
        return session_headers(raw_id), uid

    return _login


@pytest.fixture
def make_user():
    """Expose create_user() to test modules: make_user(store, "alice", "pw", email=...)."""
    return create_user


@pytest.fixture
def cookie():
    """Expose session_headers(): cookie(raw_session_id) -> {"Cookie": ...}."""
    return session_headers
