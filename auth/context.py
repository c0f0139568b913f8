"""
auth/context.py -- The per-request authentication context.

The session middleware attaches one AuthContext to request.state.auth. It
pairs the request's SessionHandle with the user resolved from it (or None).

The identity inside a session is just two keys in the session data:
  USER_ID_KEY      -- users.id of the logged-in user
  ACCESS_TOKEN_KEY -- the OAuth access token, if the login came from OAuth

login() and logout() both rotate the session id. Setting an identity always
replaces the previous one; a session never carries two users.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from auth.models import User
from sessions.handle import SessionHandle

USER_ID_KEY = "auth_user_id"
ACCESS_TOKEN_KEY = "auth_access_token"  # noqa: S105 -- session key name, not a secret


@dataclass
class AuthContext:
    session: SessionHandle
    user: Optional[User] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    def login(self, user: User) -> None:
        """Write user as this session's identity and rotate the session id."""
        self.session.set(USER_ID_KEY, user.id)
        if user.access_token:
            self.session.set(ACCESS_TOKEN_KEY, user.access_token)
        else:
            self.session.pop(ACCESS_TOKEN_KEY)
        self.session.cycle_id()
        self.user = user

    def logout(self) -> None:
        """Drop all session data (identity included) and rotate the session id."""
        self.session.clear()
        self.session.cycle_id()
        self.user = None
