"""
auth/store.py -- SQLAlchemy Core persistence for principals.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. The coordinator never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  update_user() only accepts column names from _MUTABLE_FIELDS, so a caller
  can never smuggle an arbitrary column name into the UPDATE.

password_history is stored as a JSON array of bcrypt hashes in a TEXT column
(most recent first, at most five).

session_id / refresh_token_hash are the persisted reference to the latest
login. Ban and logout clear them.

DB path: auth/certguard_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'certguard_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL until set-password for federated users
    Column("role", String(30), nullable=False, server_default="student"),
    Column("password_history", Text, nullable=False, server_default="[]"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_banned", Integer, nullable=False, server_default="0"),
    Column("requires_password_set", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
    Column("session_id", String(64)),
    Column("refresh_token_hash", String(64)),
)

_BOOL_FIELDS = frozenset({"is_active", "is_banned", "requires_password_set"})

_MUTABLE_FIELDS = frozenset(
    {
        "role",
        "hashed_password",
        "password_history",
        "is_active",
        "is_banned",
        "requires_password_set",
        "last_login",
        "session_id",
        "refresh_token_hash",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(User(email="a@example.com", role="student", hashed_password=h))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
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

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its database ID.

        Emails are stored lowercased. Raises sqlalchemy.exc.IntegrityError if
        the email already exists.
        """
        history = list(user.password_history)
        if not history and user.hashed_password:
            history = [user.hashed_password]
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role=user.role,
                    password_history=json.dumps(history),
                    is_active=1 if user.is_active else 0,
                    is_banned=1 if user.is_banned else 0,
                    requires_password_set=1 if user.requires_password_set else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup by email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM users WHERE role = 'admin' AND is_active = 1 AND is_banned = 0")
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields in a single statement.

        Booleans are converted to 0/1 and password_history to JSON. Unknown
        field names raise ValueError before any SQL runs.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return False
        values = dict(fields)
        for name in _BOOL_FIELDS & values.keys():
            values[name] = 1 if values[name] else 0
        if "password_history" in values:
            values["password_history"] = json.dumps(list(values["password_history"]))
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def record_login(self, user_id: int, session_id: str, refresh_token_hash: str) -> None:
        """Stamp last_login and remember the refresh-token reference of this login."""
        self.update_user(
            user_id,
            last_login=_now_iso(),
            session_id=session_id,
            refresh_token_hash=refresh_token_hash,
        )

    def clear_session_reference(self, user_id: int) -> None:
        self.update_user(user_id, session_id=None, refresh_token_hash=None)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    try:
        history = json.loads(row.password_history or "[]")
    except json.JSONDecodeError:
        history = []
    if not isinstance(history, list):
        history = []
    return User(
        id=row.id,
        email=row.email,
        role=row.role,
        hashed_password=row.hashed_password,
        password_history=[h for h in history if isinstance(h, str)],
        is_active=bool(row.is_active),
        is_banned=bool(row.is_banned),
        requires_password_set=bool(row.requires_password_set),
        created_at=row.created_at,
        last_login=row.last_login,
        session_id=row.session_id,
        refresh_token_hash=row.refresh_token_hash,
    )
