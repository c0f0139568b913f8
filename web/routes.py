"""
web/routes.py -- Browser login, OAuth, and logout routes for Gatehouse.

Route registration order matters: /login/oauth and /login/oauth/callback are
registered before the bare /login routes.

Routes:
  GET  /login/oauth             -- start GitHub OAuth (302 to github.com)
  GET  /login/oauth/callback    -- finish GitHub OAuth (302 to next or /)
  GET  /login                   -- login form
  POST /login                   -- handle password login (302 on success, 401 page on failure)
  POST /logout                  -- clear the session identity, 302 /login

Every OAuth failure, whatever its internal kind, ends in the same redirect to
/login?error=oauth_failed. The kind is logged, not shown.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.dependencies import get_auth_context
from auth.oauth import OAuthFlow
from core.config import get_settings
from core.errors import CsrfMismatch, IdentityResolutionError, NotFound, TokenExchangeError, VerificationFailed
from core.limiter import limiter

logger = logging.getLogger("gatehouse.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_settings = get_settings()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on /login.
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid username or password.",
    "oauth_failed": "GitHub sign-in failed. Please try again.",
}


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative ones ("//host"), both of which
    would send the browser off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/"


def _oauth_failed() -> RedirectResponse:
    return RedirectResponse("/login?error=oauth_failed", status_code=302)


def _login_page(request: Request, error_msg: Optional[str] = None, status_code: int = 200) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "github_enabled": request.app.state.oauth_flow is not None,
            "next": _safe_next(request.query_params.get("next")),
        },
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/login/oauth")
async def oauth_login(request: Request, next: Optional[str] = None) -> RedirectResponse:
    """Start a GitHub login attempt bound to the caller's session."""
    flow: Optional[OAuthFlow] = request.app.state.oauth_flow
    if flow is None:
        return _oauth_failed()
    redirect_uri = str(request.url_for("oauth_callback"))
    url = await flow.begin(get_auth_context(request), redirect_uri, _safe_next(next))
    return RedirectResponse(url, status_code=302)


@router.get("/login/oauth/callback", name="oauth_callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
) -> RedirectResponse:
    """Finish the GitHub login attempt and redirect to the stored next path."""
    flow: Optional[OAuthFlow] = request.app.state.oauth_flow
    if flow is None:
        return _oauth_failed()

    redirect_uri = str(request.url_for("oauth_callback"))
    try:
        user, next_url = await flow.complete(get_auth_context(request), code, state, redirect_uri)
    except CsrfMismatch as exc:
        client = request.client.host if request.client else "unknown"
        logger.warning("OAuth callback rejected (%s) from %s -- possible forged or replayed callback", exc, client)
        return _oauth_failed()
    except TokenExchangeError:
        logger.exception("OAuth token exchange failed")
        return _oauth_failed()
    except IdentityResolutionError:
        logger.exception("OAuth identity resolution failed")
        return _oauth_failed()

    resp = RedirectResponse(_safe_next(next_url), status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page. Already-authenticated users go straight to /."""
    auth = get_auth_context(request)
    if auth is not None and auth.is_authenticated:
        return RedirectResponse("/", status_code=302)
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""))
    return _login_page(request, error_msg)


@router.post("/login", response_class=HTMLResponse)
@limiter.limit(_settings.login_rate_limit)
async def login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    """Handle the username/password form. A failed login re-renders the form with 401."""
    backend = request.app.state.backend
    try:
        user = await backend.verify_direct(username, password)
    except (NotFound, VerificationFailed):
        return _login_page(request, _ERROR_MESSAGES["bad_credentials"], status_code=401)

    get_auth_context(request).login(user)
    resp = RedirectResponse(_safe_next(request.query_params.get("next")), status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Clear the session identity, rotate the session id, and go to /login."""
    auth = get_auth_context(request)
    if auth is not None:
        auth.logout()
    return RedirectResponse("/login", status_code=302)
