"""
api/routes/v1/auth.py -- JSON authentication endpoints.

Routes:
  POST /api/v1/auth/login   -- direct credential login; sets the session cookie
  POST /api/v1/auth/logout  -- clears identity, rotates the session
  GET  /api/v1/auth/me      -- current user info (requires auth)

Security:
  - POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  - Unknown username and wrong password produce the same 401 body --
    NotFound vs VerificationFailed is never visible to the caller.
  - Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import LoginRequest, LoginResponse, MeResponse
from auth.backend import CredentialBackend
from auth.dependencies import get_auth_context, get_current_user
from auth.models import User
from core.config import get_settings
from core.errors import NotFound, VerificationFailed
from core.limiter import limiter

logger = logging.getLogger("gatehouse.api.auth")

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/login:   public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:  public -- logging out an anonymous session is a no-op rotation
# - GET  /api/v1/auth/me:      requires auth (get_current_user)
router = APIRouter()


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Verify username and password; on success bind the user to the session."""
    backend: CredentialBackend = request.app.state.backend
    try:
        user = await backend.verify_direct(body.username, body.password)
    except (NotFound, VerificationFailed):
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    get_auth_context(request).login(user)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(id=user.id, username=user.username).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Clear the session's identity and rotate its id."""
    auth = get_auth_context(request)
    if auth is not None:
        auth.logout()
    return JSONResponse(content={"message": "Logged out."})


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return the identity bound to the caller's session."""
    return MeResponse(
        id=current_user.id,
        username=current_user.username,
        provider=current_user.provider,
        created_at=current_user.created_at,
        last_login=current_user.last_login,
    )
