"""
auth/store.py -- SQLAlchemy Core persistence layer for users.

Pattern: Repository + Data Mapper (same as sessions/store.py).
UserStore is the repository; _row_to_user is the mapper.
Backend and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Idempotent provisioning:
  UNIQUE(credential_reference) is enforced in SQL. provision() is
  get-or-create: when two first logins for the same external account race,
  the loser's INSERT raises IntegrityError and it re-reads the winner's row.
  Exactly one user record results, however many callers retry.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError

from auth.models import User
from core.errors import StoreUnavailable

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("credential_reference", String(255), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),  # ISO 8601 timestamp of last successful auth
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///gatehouse.db")
        user = store.provision("github:583231", "octocat")
        store.get_by_id(user.id)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if credential_reference is taken.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        credential_reference=user.credential_reference,
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError:
            raise
        except DBAPIError as exc:
            raise StoreUnavailable("user insert failed") from exc

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        return self._fetch_one(_users.c.id == user_id)

    def get_by_credential_reference(self, credential_reference: str) -> User | None:
        """Look up a user by credential_reference. Returns None if not found."""
        return self._fetch_one(_users.c.credential_reference == credential_reference)

    def provision(self, credential_reference: str, username: str) -> User:
        """Return the user for credential_reference, creating it on first sight.

        Keyed by credential_reference, never by call order, so retries and
        concurrent first logins converge on one record.
        """
        user = self.get_by_credential_reference(credential_reference)
        if user is not None:
            return user
        try:
            self.create_user(User(username=username, credential_reference=credential_reference))
        except IntegrityError:
            # Lost the race to a concurrent provision() -- read the winner.
            pass
        user = self.get_by_credential_reference(credential_reference)
        if user is None:
            raise StoreUnavailable("provisioned user vanished before it could be read")
        return user

    def list_users(self) -> list[User]:
        """Return all users ordered by id."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        except DBAPIError as exc:
            raise StoreUnavailable("user listing failed") from exc
        return [_row_to_user(r) for r in rows]

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user.

        Called on every successful authentication (password login and OAuth
        callback), not on session re-hydration.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
                conn.commit()
        except DBAPIError as exc:
            raise StoreUnavailable("last_login update failed") from exc

    def close(self) -> None:
        self.engine.dispose()

    def _fetch_one(self, clause) -> User | None:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(clause)).fetchone()
        except DBAPIError as exc:
            raise StoreUnavailable("user lookup failed") from exc
        return _row_to_user(row) if row is not None else None


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        credential_reference=row.credential_reference,
        created_at=row.created_at,
        last_login=row.last_login,
    )
