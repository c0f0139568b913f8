"""
asgi.py -- Application assembly for Gatehouse.

This is the ONLY file that imports from both api/ and web/. It joins the two
independent layers into a single ASGI app without coupling them to each other.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import app
from web.protected import router as protected_router
from web.routes import router as web_router

# Login routes first, then the gated protected resource.
app.include_router(web_router, tags=["Web UI"])
app.include_router(protected_router, tags=["Protected"])
