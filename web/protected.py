"""
web/protected.py -- The protected resource.

Every route on this router sits behind the access gate: require_user is a
router-level dependency, so FastAPI resolves it before any handler here runs
and an anonymous request is answered with 302 /login?next=<path> instead.
Handlers can therefore read the user straight off the request.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse

from auth.dependencies import require_user, try_get_current_user
from web.routes import templates

router = APIRouter(dependencies=[Depends(require_user)])


@router.get("/", response_class=HTMLResponse)
def protected(request: Request) -> HTMLResponse:
    user = try_get_current_user(request)
    return templates.TemplateResponse(request, "protected.html", {"username": user.username})
