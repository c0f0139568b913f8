"""
sessions/handle.py -- Per-request view of a session.

The middleware wraps the loaded (or freshly created) Session in a
SessionHandle for the duration of one request. Handlers read and write keys
through it; after the response is produced the middleware deletes every id in
discarded_ids and then writes the session back.

cycle_id() is the session-fixation defence: the data moves to a brand new id
and the old id is queued for deletion. Nothing is written until the
middleware persists, so a request that fails before persisting leaves the old
session intact.

is_new tells the middleware which write to use: True means the current id has
no row yet (it came from cycle_id()) and must be inserted; False means the row
exists and is only ever updated, so a row deleted mid-request stays deleted.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

from typing import Any

from sessions.models import Session
from sessions.store import new_session_id


class SessionHandle:
    """Mutable wrapper around one Session for the life of a request."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self.is_new = False
        self.discarded_ids: list[str] = []

    @property
    def id(self) -> str:
        return self._session.id

    @property
    def session(self) -> Session:
        return self._session

    def get(self, key: str, default: Any = None) -> Any:
        return self._session.data.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._session.data

    def set(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""
        self._session.data[key] = value

    def pop(self, key: str, default: Any = None) -> Any:
        return self._session.data.pop(key, default)

    def clear(self) -> None:
        self._session.data.clear()

    def cycle_id(self) -> str:
        """Move this session's data to a new id. Returns the new id."""
        self.discarded_ids.append(self._session.id)
        self._session.id = new_session_id()
        self.is_new = True
        return self._session.id
