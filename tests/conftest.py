"""
tests/conftest.py -- Shared test fixtures for Gatehouse tests.

This module provides:
  - make_stores(): isolated SQLite files for the session and user tables
  - make_github_client(): AsyncMock stand-in for the Authlib GitHub client
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - gateway: a fresh TestClient (follow_redirects=False) plus its stores

Design: one SQLite file per test under tmp_path. TestClient runs sync route
handlers and run_in_threadpool calls on worker threads, and plain :memory:
databases are per-connection -- a file gives every thread the same schema.

DEBUG must be set before any api/ or web/ import so get_settings() resolves
secure_cookies to False; httpx will not send Secure cookies to
http://testserver.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

# CRITICAL: Set DEBUG before any project import.
os.environ.setdefault("DEBUG", "true")

import bcrypt
import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.backend import Backend
from auth.credentials import MappingCredentialSource
from auth.oauth import OAuthFlow
from auth.store import UserStore
from core.config import get_settings
from core.limiter import limiter
from sessions.store import SessionStore

# Rate limiting is exercised by slowapi's own tests; here it would make the
# suite order-dependent (every login shares one client IP).
limiter.enabled = False

COOKIE_NAME = get_settings().session_cookie_name

ALICE_PASSWORD = "wonderland"  # noqa: S105 -- test fixture
# Low bcrypt cost keeps the suite fast; checkpw reads the cost from the hash.
ALICE_HASH = bcrypt.hashpw(ALICE_PASSWORD.encode(), bcrypt.gensalt(rounds=4)).decode()

GITHUB_ACCOUNT_ID = 583231
GITHUB_LOGIN = "octocat"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_stores(tmp_path: Path, inactivity_seconds: int = 24 * 60 * 60) -> tuple[SessionStore, UserStore]:
    db_url = f"sqlite:///{tmp_path / 'gatehouse_test.db'}"
    return SessionStore(db_url, inactivity_seconds), UserStore(db_url)


def make_profile_response(profile: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.raise_for_status = MagicMock(return_value=None)
    resp.json = MagicMock(return_value=profile or {"id": GITHUB_ACCOUNT_ID, "login": GITHUB_LOGIN})
    return resp


def make_github_client() -> MagicMock:
    """Mock of the Authlib StarletteOAuth2App surface Gatehouse uses."""

    async def create_authorization_url(redirect_uri, state=None, **kwargs):
        return {
            "url": f"https://github.com/login/oauth/authorize?client_id=test&state={state}",
            "state": state,
        }

    client = MagicMock()
    client.create_authorization_url = AsyncMock(side_effect=create_authorization_url)
    client.fetch_access_token = AsyncMock(return_value={"access_token": "gho_test", "token_type": "bearer"})
    client.get = AsyncMock(return_value=make_profile_response())
    return client


def _patch_lifespan(session_store: SessionStore, user_store: UserStore, github: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        backend = Backend(user_store, MappingCredentialSource({"alice": ALICE_HASH}), github)
        app.state.session_store = session_store
        app.state.user_store = user_store
        app.state.backend = backend
        app.state.oauth_flow = OAuthFlow(github, backend, session_store)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class Gateway:
    client: TestClient
    session_store: SessionStore
    user_store: UserStore
    github: MagicMock

    def session_cookie(self) -> str | None:
        return self.client.cookies.get(COOKIE_NAME)


@pytest.fixture
def stores(tmp_path: Path) -> Generator[tuple[SessionStore, UserStore], None, None]:
    session_store, user_store = make_stores(tmp_path)
    yield session_store, user_store
    session_store.close()
    user_store.close()


@pytest.fixture
def gateway(stores: tuple[SessionStore, UserStore]) -> Generator[Gateway, None, None]:
    """Yield a Gateway around a fresh TestClient and isolated stores.

    follow_redirects=False is essential: tests assert on redirect Location
    headers and on the Set-Cookie of the redirect response itself.
    """
    session_store, user_store = stores
    github = make_github_client()
    app.router.lifespan_context = _patch_lifespan(session_store, user_store, github)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield Gateway(client, session_store, user_store, github)
