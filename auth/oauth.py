"""
auth/oauth.py -- GitHub OAuth 2.0 authorization-code flow.

Two parts:

  create_oauth() builds the Authlib registry. GitHub is registered only when
  both client ID and secret are configured; otherwise the registry is empty
  and create_client("github") returns None, which the app reads as "OAuth
  login disabled".

  OAuthFlow drives one login attempt per session:

      idle --begin()--> pending --complete()--> authenticated | failed

  begin() generates the CSRF state itself and stores it in the session's
  attempt slot as the single outstanding OAuthAttempt (a second begin()
  overwrites the first). complete() takes that attempt out of the store with
  one atomic update BEFORE any network I/O, so a state value can be presented
  at most once, even by racing callbacks. Only then does it compare states,
  exchange the code, and resolve the identity through the credential backend.
  The slot is separate from the session's data mapping, so a concurrent
  request writing back its copy of the data cannot restore a consumed attempt.

Security notes:
  - State comparison uses hmac.compare_digest.
  - Every failure leaves the session without an identity; the session id
    is rotated only on success.
  - Attempts older than oauth_attempt_ttl_seconds are rejected even when
    the state matches.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from typing import TYPE_CHECKING, Any

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError
from starlette.concurrency import run_in_threadpool

from auth.context import AuthContext
from auth.models import User
from core.errors import AuthError, CsrfMismatch, IdentityResolutionError, TokenExchangeError

if TYPE_CHECKING:
    from auth.backend import CredentialBackend
    from core.config import Settings
    from sessions.store import SessionStore

logger = logging.getLogger("gatehouse.auth.oauth")

GITHUB = "github"

# Errors the provider round trips can surface: protocol errors from Authlib,
# transport/status errors from httpx, and malformed JSON bodies.
PROVIDER_ERRORS = (OAuthError, httpx.HTTPError, KeyError, TypeError, ValueError)

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def create_oauth(settings: Settings) -> OAuth:
    """Return an Authlib registry with GitHub registered when configured."""
    oauth = OAuth()
    if settings.github_enabled:
        oauth.register(
            name=GITHUB,
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user"},
        )
        logger.info("GitHub OAuth provider registered")
    else:
        logger.info("GitHub OAuth not configured -- OAuth login disabled")
    return oauth


# ---------------------------------------------------------------------------
# Identity endpoint
# ---------------------------------------------------------------------------


async def fetch_github_identity(client, access_token: str) -> tuple[str, str]:
    """Return (account_id, login) for the GitHub user owning access_token.

    The numeric account id is the stable subject; the login can be renamed
    on GitHub and is stored only as a display name.

    Raises one of PROVIDER_ERRORS on rejection or a malformed profile.
    """
    token = {"access_token": access_token, "token_type": "bearer"}  # noqa: S105 -- token type, not a secret
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    account_id = str(profile["id"])
    login = profile.get("login") or f"github-{account_id}"
    return account_id, login


# ---------------------------------------------------------------------------
# Flow controller
# ---------------------------------------------------------------------------


class OAuthFlow:
    """Authorization-code handshake bound to the caller's session.

    Holds no per-user state of its own: an in-flight attempt lives in the
    session store's attempt slot for the caller's session.
    """

    def __init__(
        self,
        client,
        backend: CredentialBackend,
        session_store: SessionStore,
        attempt_ttl_seconds: int = 600,
    ) -> None:
        self.client = client
        self.backend = backend
        self.session_store = session_store
        self.attempt_ttl_seconds = attempt_ttl_seconds

    async def begin(self, auth: AuthContext, redirect_uri: str, next_url: str = "/") -> str:
        """Start an attempt and return the provider authorization URL to redirect to."""
        state = secrets.token_urlsafe(32)
        rv = await self.client.create_authorization_url(redirect_uri, state=state)
        attempt = {"csrf_state": state, "created_at": time.time(), "next": next_url}
        await run_in_threadpool(self.session_store.set_attempt, auth.session.id, attempt)
        return rv["url"]

    async def complete(
        self,
        auth: AuthContext,
        code: str | None,
        state: str | None,
        redirect_uri: str,
    ) -> tuple[User, str]:
        """Finish the attempt. Returns (user, next_url) on success.

        Raises CsrfMismatch, TokenExchangeError, or IdentityResolutionError.
        On success the user is logged into the session and the id rotated.
        """
        attempt = await self._consume_attempt(auth)
        self._check_state(attempt, state)

        if not code:
            raise TokenExchangeError("callback carried no authorization code")
        try:
            token = await self.client.fetch_access_token(redirect_uri=redirect_uri, code=code)
            access_token = token["access_token"]
        except PROVIDER_ERRORS as exc:
            raise TokenExchangeError("authorization code exchange failed") from exc

        try:
            user = await self.backend.verify_oauth(access_token)
        except AuthError as exc:
            raise IdentityResolutionError("provider identity could not be resolved") from exc

        auth.login(user)
        return user, attempt.get("next") or "/"

    async def _consume_attempt(self, auth: AuthContext) -> dict[str, Any] | None:
        return await run_in_threadpool(self.session_store.take_attempt, auth.session.id)

    def _check_state(self, attempt: dict[str, Any] | None, state: str | None) -> None:
        if not attempt or not state:
            raise CsrfMismatch("no pending OAuth attempt for this session")
        expected = str(attempt.get("csrf_state", ""))
        if not hmac.compare_digest(expected.encode(), state.encode()):
            raise CsrfMismatch("OAuth state does not match the pending attempt")
        if time.time() - float(attempt.get("created_at", 0)) > self.attempt_ttl_seconds:
            raise CsrfMismatch("OAuth attempt expired")
