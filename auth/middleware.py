"""
auth/middleware.py -- Session/auth middleware wrapping every request.

Per request, strictly in this order:
  1. Read the session cookie; load that session, or create a new one when the
     cookie is missing, unknown, or expired.
  2. If the session carries an identity, re-hydrate the User via the
     credential backend's load_user(). A dangling user id is dropped from the
     session rather than failing the request.
  3. Attach AuthContext(session, user) to request.state.auth.
  4. Run the rest of the app.
  5. Whatever happened in step 4 (response or exception), delete the ids the
     handler discarded (rotation), then write the session: insert under a
     rotated id, otherwise update only. Writing slides the expiry forward.
     The write runs in a shielded cancel scope so a client disconnect does
     not abandon it halfway.
  6. Set/refresh the cookie: HttpOnly, SameSite=Lax, Max-Age = inactivity
     window, Secure per configuration. If the update found the row already
     gone (a concurrent logout won), the cookie is cleared instead.

StoreUnavailable in steps 1-2 or 5 turns into a 503 JSON error. Nothing else
is caught here; handler exceptions propagate after the session is persisted.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

import anyio
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from auth.context import ACCESS_TOKEN_KEY, USER_ID_KEY, AuthContext
from auth.models import User
from core.errors import NotFound, StoreUnavailable
from sessions.handle import SessionHandle
from sessions.store import SessionStore

logger = logging.getLogger("gatehouse.auth.middleware")

# Session ids are 43 characters; anything much longer is not ours.
_MAX_COOKIE_LENGTH = 64


def _store_unavailable_response() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": {"code": "store_unavailable", "message": "Service temporarily unavailable."}},
    )


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Load/create the session and resolve the user before every request.

    Reads request.app.state.session_store and request.app.state.backend, which
    the lifespan puts in place. Paths in exempt_paths skip session handling
    entirely (health checks should not mint sessions).
    """

    def __init__(
        self,
        app,
        cookie_name: str = "gatehouse_session",
        secure: bool = True,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        super().__init__(app)
        self.cookie_name = cookie_name
        self.secure = secure
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        store: SessionStore = request.app.state.session_store
        try:
            handle = await self._open_session(store, request.cookies.get(self.cookie_name))
            user = await self._resolve_user(request.app.state.backend, handle)
        except StoreUnavailable:
            logger.exception("Session store unavailable while loading session")
            return _store_unavailable_response()

        request.state.auth = AuthContext(session=handle, user=user)

        store_failed = False
        kept = True
        try:
            response = await call_next(request)
        finally:
            with anyio.CancelScope(shield=True):
                try:
                    kept = await self._persist(store, handle)
                except StoreUnavailable:
                    logger.exception("Session store unavailable while saving session")
                    store_failed = True

        if store_failed:
            return _store_unavailable_response()
        if not kept:
            response.delete_cookie(self.cookie_name, path="/", httponly=True, samesite="lax", secure=self.secure)
            return response
        response.set_cookie(
            self.cookie_name,
            handle.id,
            max_age=store.inactivity_seconds,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )
        return response

    async def _open_session(self, store: SessionStore, cookie: str | None) -> SessionHandle:
        if cookie and len(cookie) <= _MAX_COOKIE_LENGTH:
            try:
                return SessionHandle(await run_in_threadpool(store.load, cookie))
            except NotFound:
                pass
        return SessionHandle(await run_in_threadpool(store.create))

    async def _resolve_user(self, backend, handle: SessionHandle) -> User | None:
        user_id = handle.get(USER_ID_KEY)
        if user_id is None:
            return None
        try:
            user = await backend.load_user(user_id)
        except NotFound:
            logger.info("Session references missing user_id=%s -- clearing identity", user_id)
            handle.pop(USER_ID_KEY)
            handle.pop(ACCESS_TOKEN_KEY)
            return None
        user.access_token = handle.get(ACCESS_TOKEN_KEY)
        return user

    async def _persist(self, store: SessionStore, handle: SessionHandle) -> bool:
        """Write the session back. Returns False if its row vanished mid-request.

        A rotated session (is_new) is inserted under its fresh id. Any other
        session is only updated: when a concurrent logout, rotation or sweep
        deleted the row first, this request's changes are dropped rather than
        reviving the id.
        """
        for old_id in handle.discarded_ids:
            await run_in_threadpool(store.delete, old_id)
        if handle.is_new:
            await run_in_threadpool(store.insert, handle.session)
            return True
        if await run_in_threadpool(store.save, handle.session):
            return True
        logger.info("Session ended by a concurrent request -- dropping this request's changes")
        return False
