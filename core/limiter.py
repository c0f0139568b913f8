"""
core/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware, exposed on app.state.limiter)
and by the password login routes in api/routes/v1/auth.py and web/routes.py.
It lives in core/ because both layers need the same instance.

One shared instance means one in-memory counter store; per-module instances
would each count separately and the limit would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
