"""
api/main.py -- FastAPI application entry point for Gatehouse.

Run with:      python main.py serve
               uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency for every request
  2. SessionAuthMiddleware -- loads/creates the session, resolves the user,
                              persists the session and sets the cookie
  3. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter

Lifespan builds every shared resource into app.state on startup (session
store, user store, credential source, credential backend, OAuth flow) and
starts the session sweep task. Shutdown cancels and awaits the task, then
closes the stores.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.backend import Backend
from auth.credentials import FileCredentialSource
from auth.middleware import SessionAuthMiddleware
from auth.oauth import GITHUB, OAuthFlow, create_oauth
from auth.store import UserStore
from core.config import get_settings
from core.errors import LoginRequired, StoreUnavailable
from core.limiter import limiter
from sessions.store import SessionStore

VERSION = "0.1.0"
HEALTH_PATH = "/api/v1/health"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(store: SessionStore, interval: float) -> None:
    """Delete expired sessions every `interval` seconds for the app's lifetime.

    The store is passed in explicitly; the loop touches nothing else. A failed
    sweep is logged and retried on the next tick -- it never ends the loop.
    CancelledError from task.cancel() at shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await run_in_threadpool(store.sweep_expired)
        except Exception:
            logger.exception("Session sweep failed -- retrying in %ss", interval)
            continue
        if removed:
            logger.info("Session sweep removed %d expired session(s)", removed)
        else:
            logger.debug("Session sweep found nothing to remove")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The sweep task is started last because it needs the store.
    """
    settings = get_settings()
    logger.info("Gatehouse starting up")

    app.state.session_store = SessionStore(settings.database_url, settings.session_inactivity_seconds)
    app.state.user_store = UserStore(settings.database_url)
    credentials = FileCredentialSource(settings.credentials_file or None)

    github = create_oauth(settings).create_client(GITHUB)
    app.state.backend = Backend(app.state.user_store, credentials, github)
    app.state.oauth_flow = (
        OAuthFlow(github, app.state.backend, app.state.session_store, settings.oauth_attempt_ttl_seconds)
        if github is not None
        else None
    )
    logger.info(
        "Auth initialized (direct_login_users=%d, github_oauth=%s)",
        len(credentials),
        github is not None,
    )

    app.state.sweep_task = asyncio.create_task(
        _sweep_loop(app.state.session_store, settings.session_sweep_interval_seconds)
    )

    yield

    app.state.sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.sweep_task
    app.state.session_store.close()
    app.state.user_store.close()
    logger.info("Gatehouse shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse",
    description="Session-based authentication gateway with GitHub OAuth and password login.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST call is OUTERMOST.
# SlowAPI sits innermost; the session middleware wraps it so rate-limited
# responses still carry a refreshed session cookie.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    SessionAuthMiddleware,
    cookie_name=_settings.session_cookie_name,
    secure=_settings.secure_cookies,
    exempt_paths=(HEALTH_PATH,),
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One access log line per request, tagged with the session's user id."""
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    auth = getattr(request.state, "auth", None)
    logger.info(
        "%s %s %d %.1fms %s user=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        auth.user.id if auth is not None and auth.is_authenticated else "-",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
# Web UI routers are mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All JSON error bodies share the ErrorResponse envelope. Internal error
# kinds never reach a response body.
# ---------------------------------------------------------------------------


def error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(LoginRequired)
async def login_required_handler(request: Request, exc: LoginRequired) -> RedirectResponse:
    """The access gate rejected the request: send the browser to log in."""
    return RedirectResponse(exc.location, status_code=302)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return error_response(503, "store_unavailable", "Service temporarily unavailable.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "-")
    response = error_response(429, "rate_limited", "Too many login attempts. Try again later.", str(exc.detail))
    response.headers["Retry-After"] = "60"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured detail dicts (from the auth dependencies) pass through as the error field."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. The raw exception goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Exempt from session handling and rate limiting -- health checks must not mint
# sessions or be throttled.
# ---------------------------------------------------------------------------


@app.get(HEALTH_PATH, include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a session store check."""
    store_ok = await run_in_threadpool(request.app.state.session_store.ping)
    return HealthResponse(
        status="healthy" if store_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "session_store": "ok" if store_ok else "error"},
    )
