"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Stores and the
backend do the work.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """Represents an authenticated identity in Gatehouse.

    credential_reference is the stable, unique link to whatever proved the
    identity: "github:<numeric account id>" for OAuth users and
    "local:<username>" for users from the credential source. Provisioning is
    keyed on it, never on username -- usernames are display names and two
    providers may hand out the same one.

    access_token is the OAuth access token for the current session only. It
    lives in the session data and is attached when the user is loaded; the
    users table has no column for it.
    """

    username: str
    credential_reference: str
    id: int | None = None
    access_token: str | None = None
    created_at: str | None = None
    last_login: str | None = None

    @property
    def provider(self) -> str:
        """"github", "local", ... -- the prefix of credential_reference."""
        return self.credential_reference.split(":", 1)[0]
