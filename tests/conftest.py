"""
tests/conftest.py -- Shared test fixtures for RoleKeeper.

This module provides:
  - make_accounts(): isolated in-memory database + stores + AccountService
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - accounts: module-scoped seeded AccountService (ADMIN/USER roles, two accounts)
  - client: function-scoped TestClient with follow_redirects=False
  - helpers to log in through the browser form or the JSON API

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any core/auth import so
get_settings() auto-generates SECRET_KEY, accepts the "testserver" host and
does not throttle the many logins a test run performs.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')
os.environ.setdefault("SEED_ON_STARTUP", "false")
os.environ.setdefault("SEED_ADMIN_PASSWORD", "admin-pass-123")
os.environ.setdefault("SEED_USER_PASSWORD", "user-pass-123")

import pytest
from fastapi.testclient import TestClient

from accounts.seed import seed_defaults
from accounts.service import AccountService
from asgi import app
from auth.store import RoleStore, SessionStore, UserStore, open_engine
from core.config import get_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = os.environ["SEED_ADMIN_PASSWORD"]
USER_EMAIL = "user@example.com"
USER_PASSWORD = os.environ["SEED_USER_PASSWORD"]

_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_accounts(db_suffix: str) -> AccountService:
    """Create an AccountService over a fresh named shared-memory SQLite database.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   never share state.
    """
    url = f"sqlite:///file:test_rolekeeper_{db_suffix}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"
    engine = open_engine(url)
    return AccountService(RoleStore(engine), UserStore(engine), SessionStore(engine))


def _patch_lifespan(accounts: AccountService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = accounts.users.engine
        app.state.role_store = accounts.roles
        app.state.user_store = accounts.users
        app.state.session_store = accounts.sessions
        app.state.accounts = accounts
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def service() -> AccountService:
    """A fresh, unseeded AccountService for unit tests."""
    return make_accounts("unit")


@pytest.fixture(scope="module")
def accounts(request) -> Generator[AccountService, None, None]:
    """Seeded AccountService shared by every test in a module."""
    svc = make_accounts(request.module.__name__.rsplit(".", 1)[-1])
    seed_defaults(svc, get_settings())
    yield svc
    svc.users.engine.dispose()


@pytest.fixture
def client(accounts: AccountService) -> Generator[TestClient, None, None]:
    """TestClient over the real app with a clean cookie jar.

    follow_redirects=False is essential for web route tests: we assert on
    redirect *locations*, which are invisible once the client follows them.
    """
    app.router.lifespan_context = _patch_lifespan(accounts)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


# ---------------------------------------------------------------------------
# Login helpers
# ---------------------------------------------------------------------------


def browser_login(client: TestClient, email: str, password: str):
    """Submit the login form. The access_token cookie lands in the client's jar."""
    return client.post("/login", data={"email": email, "password": password})


def api_token(client: TestClient, email: str, password: str) -> str:
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["accessToken"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def fetch_csrf(client: TestClient) -> str:
    """Mint the session CSRF token; the signed session cookie lands in the jar."""
    return client.get("/api/auth/csrf").json()["data"]["csrfToken"]


def role_id(accounts: AccountService, name: str) -> int:
    return accounts.find_role_by_name(name).id
