"""
core/errors.py -- Error taxonomy shared by the session and auth layers.

AuthError subclasses are recoverable authentication outcomes. The HTTP layer
collapses every one of them into "redirect to login" or a generic 401 -- the
specific subclass is for logging and tests, never for response bodies.

StoreUnavailable is the only storage-layer failure that reaches callers; the
API turns it into a 503. The background sweep logs it and tries again on the
next tick.

Layer rule: core/ is the kernel. No project imports here.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication failures."""


class NotFound(AuthError):
    """No such session, user, or credential. Treated as unauthenticated."""


class VerificationFailed(AuthError):
    """Wrong secret, or the OAuth provider rejected the access token."""


class CsrfMismatch(AuthError):
    """OAuth callback state did not match the pending attempt (or none was pending)."""


class TokenExchangeError(AuthError):
    """Exchanging the authorization code for an access token failed."""


class IdentityResolutionError(AuthError):
    """The access token could not be turned into a local user."""


class StoreUnavailable(Exception):
    """The backing database could not complete an operation."""


class LoginRequired(Exception):
    """Raised by the access gate. The API layer answers with a 302 to location."""

    def __init__(self, location: str = "/login") -> None:
        super().__init__(location)
        self.location = location
