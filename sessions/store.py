"""
sessions/store.py -- SQLAlchemy Core persistence for session records.

Pattern: Repository + Data Mapper (same shape as auth/store.py).
SessionStore is the repository; _row_to_session is the mapper.

Expiry model:
  Sliding expiry. create(), save() and insert() all set
  expiry = now + inactivity_window, so every persisted request pushes the
  deadline forward. load() treats a row whose expiry has passed as absent even
  if the sweep has not removed it yet -- stale data is never returned.

Concurrency:
  Every method is one short transaction relying on the database's own
  row-level atomicity. save() is UPDATE-only, so a request that finishes after
  a concurrent logout, rotation or sweep cannot revive the deleted id; only
  insert() creates rows, and only for ids fresh from new_session_id().
  Concurrent save() calls for the same live id resolve last-writer-wins.
  The pending OAuth attempt lives in its own column that save() never
  writes; take_attempt() clears it with a compare-and-swap UPDATE, so an
  attempt is handed out once even to racing callbacks. sweep_expired() is
  one DELETE ... WHERE expiry < now; it never takes a lock that outlives that
  statement.

Errors:
  Driver failures (OperationalError and friends) are raised as
  core.errors.StoreUnavailable. A missing or expired id raises
  core.errors.NotFound from load().

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Column, Float, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError

from core.errors import NotFound, StoreUnavailable
from sessions.models import Session

logger = logging.getLogger("gatehouse.sessions")

_DEFAULT_INACTIVITY_SECONDS = 24 * 60 * 60  # 1 day

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("data", Text, nullable=False),  # JSON object
    Column("expiry", Float, nullable=False, index=True),  # epoch seconds
    Column("last_activity", Float, nullable=False),
    # Pending OAuth attempt (JSON) or NULL. Written only by set_attempt() and
    # take_attempt(); save() never touches it.
    Column("attempt", Text),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL so session reads are not blocked by the sweep's DELETE."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def new_session_id() -> str:
    """Return a fresh opaque session id (32 random bytes, URL-safe base64)."""
    return secrets.token_urlsafe(32)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Re-raise driver failures as StoreUnavailable.

    IntegrityError passes through untouched: it is a data outcome the caller
    handles (duplicate id), not an outage.
    """
    try:
        yield
    except IntegrityError:
        raise
    except DBAPIError as exc:
        raise StoreUnavailable(f"session store {operation} failed") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for Session records.

    Usage:
        store = SessionStore("sqlite:///sessions.db")
        session = store.create()
        session.data["theme"] = "dark"
        store.save(session)
        store.load(session.id)      # raises NotFound once expired
        store.sweep_expired()       # call periodically
        store.close()
    """

    def __init__(self, db_url: str, inactivity_seconds: int = _DEFAULT_INACTIVITY_SECONDS) -> None:
        if inactivity_seconds <= 0:
            raise ValueError("inactivity_seconds must be positive")
        self.inactivity_seconds = inactivity_seconds
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def create(self) -> Session:
        """Insert and return a new empty session expiring one window from now."""
        now = time.time()
        session = Session(
            id=new_session_id(),
            data={},
            expiry=now + self.inactivity_seconds,
            last_activity=now,
        )
        with _storage_errors("create"), self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    data=json.dumps(session.data),
                    expiry=session.expiry,
                    last_activity=session.last_activity,
                )
            )
        return session

    def load(self, session_id: str) -> Session:
        """Return the live session for session_id.

        Raises NotFound when the id is unknown or its expiry has passed.
        """
        with _storage_errors("load"), self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        if row is None or row.expiry <= time.time():
            raise NotFound("session not found or expired")
        return _row_to_session(row)

    def _touch(self, session: Session) -> dict:
        now = time.time()
        session.last_activity = now
        session.expiry = now + self.inactivity_seconds
        return {
            "data": json.dumps(session.data),
            "expiry": session.expiry,
            "last_activity": session.last_activity,
        }

    def save(self, session: Session) -> bool:
        """Write back a session that already has a row, sliding its expiry.

        UPDATE only: returns False, writing nothing, when the row is gone
        (logged out, rotated away, or swept while the request was in flight).
        A deleted id is never brought back.

        Mutates session in place so the caller sees the new timestamps.
        """
        values = self._touch(session)
        with _storage_errors("save"), self.engine.begin() as conn:
            result = conn.execute(_sessions.update().where(_sessions.c.id == session.id).values(**values))
        return result.rowcount == 1

    def insert(self, session: Session) -> None:
        """Write a session under an id the store has never held (after rotation).

        Raises IntegrityError if the id already exists.
        """
        values = self._touch(session)
        with _storage_errors("insert"), self.engine.begin() as conn:
            conn.execute(_sessions.insert().values(id=session.id, **values))

    def set_attempt(self, session_id: str, attempt: dict[str, Any]) -> bool:
        """Store attempt as the session's single pending attempt, replacing any other.

        Returns False when the session row does not exist.
        """
        with _storage_errors("set_attempt"), self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update().where(_sessions.c.id == session_id).values(attempt=json.dumps(attempt))
            )
        return result.rowcount == 1

    def take_attempt(self, session_id: str) -> dict[str, Any] | None:
        """Remove and return the session's pending attempt, or None.

        The clearing UPDATE only matches while the column still holds the
        value that was read, so of several concurrent callers exactly one gets
        the attempt. Expired sessions have no attempt.
        """
        with _storage_errors("take_attempt"), self.engine.begin() as conn:
            row = conn.execute(
                select(_sessions.c.attempt).where(_sessions.c.id == session_id, _sessions.c.expiry > time.time())
            ).first()
            if row is None or row.attempt is None:
                return None
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.id == session_id, _sessions.c.attempt == row.attempt)
                .values(attempt=None)
            )
        return json.loads(row.attempt) if result.rowcount == 1 else None

    def delete(self, session_id: str) -> None:
        """Remove the record. No-op when it is already gone."""
        with _storage_errors("delete"), self.engine.begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.id == session_id))

    def sweep_expired(self) -> int:
        """Delete every record whose expiry is in the past. Returns rows removed."""
        with _storage_errors("sweep"), self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expiry < time.time()))
        return result.rowcount

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_sessions.select().limit(1)).fetchall()
        except DBAPIError:
            logger.exception("Session store health check failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        data=json.loads(row.data),
        expiry=row.expiry,
        last_activity=row.last_activity,
    )
