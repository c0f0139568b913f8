"""
auth/backend.py -- Credential backend: turns a presented credential into a User.

CredentialBackend is the interface the rest of the app codes against; Backend
is the single concrete implementation a deployment wires up in the lifespan.

Verification paths:
  verify_direct(identifier, secret)
      Credential source lookup + password check. NotFound for an unknown
      identifier, VerificationFailed for a wrong secret. The first successful
      login provisions a users row keyed "local:<identifier>".

  verify_oauth(access_token)
      Asks GitHub who owns the token. VerificationFailed if GitHub refuses or
      the call errors. Provisions (get-or-create) a users row keyed
      "github:<account id>" -- idempotent under retries and races.

  load_user(user_id)
      Re-hydrates the identity stored in a session. No re-verification.

Security notes:
  - Timing equalization: an unknown identifier is still run through the
    password verifier (against DUMMY_HASH) before NotFound is raised, so
    response time does not reveal which identifiers exist.

All blocking work (SQL, bcrypt) runs via run_in_threadpool so concurrent
requests on the event loop are never starved.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from starlette.concurrency import run_in_threadpool

from auth.credentials import CredentialSource
from auth.models import User
from auth.oauth import GITHUB, PROVIDER_ERRORS, fetch_github_identity
from auth.passwords import DUMMY_HASH, verify_password
from auth.store import UserStore
from core.errors import NotFound, VerificationFailed

logger = logging.getLogger("gatehouse.auth")


class CredentialBackend(Protocol):
    async def verify_direct(self, identifier: str, secret: str) -> User: ...

    async def verify_oauth(self, access_token: str) -> User: ...

    async def load_user(self, user_id: int) -> User: ...


class Backend:
    """Credential backend over a UserStore, a CredentialSource and the GitHub client.

    github_client may be None when OAuth is not configured; verify_oauth then
    always fails with VerificationFailed.
    """

    def __init__(
        self,
        users: UserStore,
        credentials: CredentialSource,
        github_client=None,
        verify_secret: Callable[[str, str], bool] = verify_password,
    ) -> None:
        self.users = users
        self.credentials = credentials
        self.github_client = github_client
        self._verify_secret = verify_secret

    async def verify_direct(self, identifier: str, secret: str) -> User:
        reference = self.credentials.lookup(identifier)
        if reference is None:
            # Equalize timing -- do NOT return before running the verifier
            await run_in_threadpool(self._verify_secret, secret, DUMMY_HASH)
            raise NotFound("unknown identifier")
        if not await run_in_threadpool(self._verify_secret, secret, reference):
            raise VerificationFailed("secret does not match")

        user = await run_in_threadpool(self.users.provision, f"local:{identifier}", identifier)
        await run_in_threadpool(self.users.update_last_login, user.id)
        logger.info("Direct login verified for user_id=%s", user.id)
        return user

    async def verify_oauth(self, access_token: str) -> User:
        if self.github_client is None:
            raise VerificationFailed("OAuth provider is not configured")
        try:
            account_id, login = await fetch_github_identity(self.github_client, access_token)
        except PROVIDER_ERRORS as exc:
            logger.warning("GitHub rejected access token or identity call failed: %s", type(exc).__name__)
            raise VerificationFailed("provider rejected the access token") from exc

        user = await run_in_threadpool(self.users.provision, f"{GITHUB}:{account_id}", login)
        await run_in_threadpool(self.users.update_last_login, user.id)
        user.access_token = access_token
        logger.info("OAuth login verified for user_id=%s", user.id)
        return user

    async def load_user(self, user_id: int) -> User:
        user = await run_in_threadpool(self.users.get_by_id, user_id)
        if user is None:
            raise NotFound("user no longer exists")
        return user
