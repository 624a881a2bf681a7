"""
tests/conftest.py -- Shared test fixtures for ticketgate.

This module provides:
  - store:       isolated in-memory UserStore per test
  - mailer:      RecordingMailer that keeps every message instead of sending it
  - clock:       FakeClock injected into CredentialVerifier for expiry tests
  - verifier:    CredentialVerifier wired to the three above
  - client:      TestClient (follow_redirects=False) over the real app with a
                 patched lifespan that installs the fixtures on app.state
  - make_user(): create a user in the store and return it
  - session_cookie(): sign a session for a user, ready for a cookie jar

The fakes themselves (RecordingMailer, FakeClock) live in tests/fakes.py so
test modules can import them directly.

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any auth/core import: settings and
the signing secret are resolved once and cached.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("JWT_SECRET", "test-signing-secret-0123456789abcdef0123456789")
os.environ.setdefault("BASE_URL", "http://localhost")
os.environ.setdefault("ADMIN_EMAILS", "boss@example.com")

import pytest
from fastapi import APIRouter
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.flows import CredentialVerifier
from auth.models import SessionClaims, User
from auth.session import SESSION_COOKIE
from auth.store import UserStore
from auth.tokens import create_session_token, hash_password
from core.config import get_settings
from tests.fakes import FakeClock, RecordingMailer

# A shared in-memory counter would make test order matter. TestRateLimits
# in test_auth_routes.py switches it back on with a fresh counter.
limiter.enabled = False

# ---------------------------------------------------------------------------
# Stand-in for the downstream page and commerce handlers
#
# The gate only decides whether a request reaches a handler. This catch-all
# echoes the path so tests can tell "forwarded" apart from "redirected".
# Registered after api.main's own routes, so those still match first.
# ---------------------------------------------------------------------------

_downstream = APIRouter()


@_downstream.get("/{full_path:path}", include_in_schema=False)
def _echo(full_path: str) -> dict:
    return {"forwarded": "/" + full_path}


app.include_router(_downstream)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore(db_url=f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def verifier(store: UserStore, mailer: RecordingMailer, clock: FakeClock) -> CredentialVerifier:
    return CredentialVerifier(store, mailer, get_settings(), clock=clock)


@pytest.fixture
def make_user(store: UserStore):
    """Factory: make_user(email, role="user", password=None, **fields) -> User."""

    def _make(email: str, role: str = "user", password: str | None = None, **fields) -> User:
        user = User(
            email=email,
            role=role,
            password_hash=hash_password(password) if password else None,
            auth_provider="password" if password else None,
            **fields,
        )
        user_id = store.create_user(user)
        return store.get_by_id(user_id)

    return _make


@pytest.fixture
def session_cookie():
    """Factory: session_cookie(user) -> {"session_token": <jwt>}."""

    def _cookie(user: User) -> dict[str, str]:
        return {SESSION_COOKIE: create_session_token(SessionClaims.from_user(user))}

    return _cookie


def _patch_lifespan(store: UserStore, mailer: RecordingMailer, verifier: CredentialVerifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, mailer and verifier into app.state so requests hit
    real route handlers against isolated databases. The OAuth registry is a
    MagicMock so no provider metadata is ever fetched.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.mailer = mailer
        app.state.verifier = verifier
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


@pytest.fixture
def client(store, mailer, verifier) -> Generator[TestClient, None, None]:
    """TestClient on http://localhost with redirects left unfollowed.

    follow_redirects=False is essential: gate tests assert on Location
    headers, which are invisible once the client follows the redirect.
    """
    app.router.lifespan_context = _patch_lifespan(store, mailer, verifier)
    with TestClient(app, base_url="http://localhost", follow_redirects=False) as c:
        yield c


@pytest.fixture
def prod_client(store, mailer, verifier) -> Generator[TestClient, None, None]:
    """Same as client, but requests arrive for https://events.example.com."""
    app.router.lifespan_context = _patch_lifespan(store, mailer, verifier)
    with TestClient(app, base_url="https://events.example.com", follow_redirects=False) as c:
        yield c
