"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
coordinator do the work; these own the shape.

Timestamps on in-memory security records are timezone-aware UTC datetimes
from the injected Clock. The persisted User record keeps ISO 8601 strings,
matching what SQLite stores.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """A principal of the credential platform.

    password_history is most-recent-first and never longer than 5 entries;
    its first entry is the current hashed_password once any password is set.

    session_id / refresh_token_hash are the persisted reference to the most
    recent login. A ban erases both so a replayed refresh token has nothing
    to match against even if the in-memory session survived.
    """

    email: str
    role: str  # "admin", "registrar", "student", "employer"
    id: int | None = None
    hashed_password: str | None = None  # None until set-password for federated users
    password_history: list[str] = field(default_factory=list)
    is_active: bool = True
    is_banned: bool = False
    requires_password_set: bool = False
    created_at: str | None = None
    last_login: str | None = None
    session_id: str | None = None
    refresh_token_hash: str | None = None


@dataclass
class Session:
    """Server-side record of one login.

    Owned exclusively by SessionStore. Treated as absent once
    now - last_activity_at exceeds the idle timeout.
    """

    session_id: str
    principal_id: int
    email: str
    role: str
    created_at: datetime
    last_activity_at: datetime
    refresh_token_hash: str


@dataclass
class IssuedSession:
    access_token: str
    refresh_token: str
    session_id: str


@dataclass
class RefreshResult:
    access_token: str
    principal: dict


@dataclass
class LockoutRecord:
    """Failed-login state for one identifier (email, or client IP when no email)."""

    identifier: str
    attempts: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    locked: bool = False
    locked_until: datetime | None = None


@dataclass
class LockInfo:
    locked: bool
    locked_until: datetime
    attempts: int
    remaining_minutes: int


@dataclass
class FailureInfo:
    attempts: int
    locked: bool
    locked_until: datetime | None
    remaining_attempts: int


@dataclass
class IPActivityRecord:
    """Request counters for one client IP.

    request_count is lifetime; window_count restarts every window so a busy
    but steady client is not flagged forever.
    """

    ip: str
    first_seen: datetime
    last_seen: datetime
    window_start: datetime
    request_count: int = 0
    window_count: int = 0
    endpoints: set[str] = field(default_factory=set)
    flagged: bool = False


@dataclass
class CSRFTokenRecord:
    principal_key: str
    token: str
    created_at: datetime


@dataclass
class PasswordScore:
    valid: bool
    errors: list[str]
    score: int
    level: str


@dataclass(frozen=True)
class RequestMeta:
    """Caller details attached to security events."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass
class AuthContext:
    """What an authenticated request knows about its caller."""

    user: User
    session_id: str
    claims: dict
