"""
auth/dependencies.py -- Access gate and FastAPI Depends() helpers.

check_access() is the gate itself: a pure function of the already-resolved
user and the requested path. It performs no I/O and never raises; it returns
a GateDecision that either passes the user through unchanged or names the
login redirect. Any framework can apply it.

The FastAPI adapters over it:
  try_get_current_user() -- soft variant, None when unauthenticated.
  require_user()         -- browser routes: raises LoginRequired, which the
                            API layer turns into 302 /login?next=<path>.
                            Attach it at router level so no handler on the
                            router can run without a user.
  get_current_user()     -- JSON routes: raises HTTP 401.

A request that never went through SessionAuthMiddleware has no
request.state.auth and is treated as unauthenticated -- the gate redirects,
it does not 500.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from fastapi import HTTPException, Request

from auth.context import AuthContext
from auth.models import User
from core.errors import LoginRequired

LOGIN_URL = "/login"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    user: Optional[User] = None
    redirect_to: Optional[str] = None


def check_access(user: Optional[User], path: str = "/", login_url: str = LOGIN_URL) -> GateDecision:
    """Pass user through, or redirect to login_url carrying path as ?next=."""
    if user is None:
        return GateDecision(allowed=False, redirect_to=f"{login_url}?next={quote(path, safe='/')}")
    return GateDecision(allowed=True, user=user)


def get_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, "auth", None)


def try_get_current_user(request: Request) -> Optional[User]:
    """Return the user the middleware resolved for this request, or None."""
    auth = get_auth_context(request)
    return auth.user if auth is not None else None


def require_user(request: Request) -> User:
    """Gate for browser routes. Raises LoginRequired when unauthenticated.

    Use at router level:
        router = APIRouter(dependencies=[Depends(require_user)])
    """
    decision = check_access(try_get_current_user(request), request.url.path)
    if not decision.allowed:
        raise LoginRequired(decision.redirect_to)
    return decision.user


def get_current_user(request: Request) -> User:
    """Gate for JSON routes. Raises HTTP 401 if the request is not authenticated."""
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
