"""
auth/sessions.py -- Login sessions with idle timeout and refresh-token binding.

A session is the server-side half of a login. The access token is a
stateless 15-minute JWT, but every authenticated request also checks the
session it names (is_valid + touch), so an idle session dies after
SESSION_TIMEOUT_MINUTES even while its access token is still signed.

Refresh binding: the session stores sha256(refresh_token). refresh() mints a
new access token only when
  1. the refresh JWT verifies (signature, expiry, typ),
  2. the session it names exists and is not idle-expired (an idle session is
     deleted here, whatever token was presented),
  3. the presented token hashes to the stored hash.
Once invalidate() deletes the session, every copy of the refresh token is
dead.

The new access token always carries the role stored on the session, never a
role from the presented token, so a demotion takes effect at the next
refresh. update_role() is how the admin layer pushes that change.

Thread safety: one lock around the dict. is_valid() (which may delete),
refresh() (validate + touch + read role) and sweep() each run entirely under
it, so a sweep can never delete a session between refresh()'s check and its
touch.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace

from auth.errors import InvalidRefresh, TokenInvalid
from auth.models import IssuedSession, RefreshResult, Session, User
from auth.tokens import (
    TOKEN_TYPE_REFRESH,
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_refresh_token,
    new_session_id,
    refresh_hash_matches,
)
from core.clock import Clock, SystemClock

logger = logging.getLogger("certguard.sessions")

DEFAULT_IDLE_TIMEOUT_SECONDS = 30 * 60


class SessionStore:
    """In-memory session registry.

    Usage:
        store = SessionStore(clock=SystemClock(), idle_timeout_seconds=1800)
        issued = store.create(user)
        store.is_valid(issued.session_id)   # True
        store.refresh(issued.refresh_token) # RefreshResult
        store.invalidate(issued.session_id)
    """

    def __init__(
        self,
        clock: Clock | None = None,
        idle_timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS,
        access_expire_seconds: int = 0,
        refresh_expire_seconds: int = 0,
    ) -> None:
        self._clock = clock or SystemClock()
        self.idle_timeout_seconds = idle_timeout_seconds
        self._access_expire = access_expire_seconds
        self._refresh_expire = refresh_expire_seconds
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, principal: User) -> IssuedSession:
        """Open a session for principal and sign both tokens for it."""
        if principal.id is None:
            raise ValueError("Cannot create a session for an unsaved principal.")
        session_id = new_session_id()
        access_token = create_access_token(
            principal.id, principal.email, principal.role, session_id, expire_seconds=self._access_expire
        )
        refresh_token = create_refresh_token(
            principal.id, principal.email, session_id, expire_seconds=self._refresh_expire
        )
        now = self._clock.now()
        session = Session(
            session_id=session_id,
            principal_id=principal.id,
            email=principal.email,
            role=principal.role,
            created_at=now,
            last_activity_at=now,
            refresh_token_hash=hash_refresh_token(refresh_token),
        )
        with self._lock:
            self._sessions[session_id] = session
        return IssuedSession(access_token=access_token, refresh_token=refresh_token, session_id=session_id)

    def touch(self, session_id: str) -> None:
        """Mark activity now. Silently ignores unknown sessions."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity_at = self._clock.now()

    def is_valid(self, session_id: str) -> bool:
        """True while the session exists and has not been idle past the timeout.

        An idle-expired session is deleted here, so the next read sees it as absent.
        """
        with self._lock:
            return self._live_session(session_id) is not None

    def get(self, session_id: str) -> Session | None:
        """Snapshot copy of a live session, or None."""
        with self._lock:
            session = self._live_session(session_id)
            return replace(session) if session is not None else None

    def invalidate(self, session_id: str) -> bool:
        """Delete a session (logout, ban). Returns True if one was removed."""
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        return removed is not None

    def invalidate_principal(self, principal_id: int) -> int:
        """Delete every session belonging to principal_id. Returns the count removed."""
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.principal_id == principal_id]
            for sid in doomed:
                del self._sessions[sid]
        if doomed:
            logger.info("Invalidated %d session(s) for principal %s", len(doomed), principal_id)
        return len(doomed)

    def update_role(self, principal_id: int, role: str) -> int:
        """Record a role change on every live session of principal_id."""
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.principal_id == principal_id]
            for session in sessions:
                session.role = role
        return len(sessions)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> RefreshResult:
        """Exchange a bound refresh token for a new access token.

        Raises:
            InvalidRefresh: bad/expired signature, unknown or idle session,
                or the token is not the one bound to the session.
        """
        try:
            claims = decode_token(refresh_token, TOKEN_TYPE_REFRESH)
        except TokenInvalid as exc:
            raise InvalidRefresh() from exc

        session_id = claims["sid"]
        with self._lock:
            session = self._live_session(session_id)
            if session is None or not refresh_hash_matches(refresh_token, session.refresh_token_hash):
                raise InvalidRefresh()
            session.last_activity_at = self._clock.now()
            principal_id, email, role = session.principal_id, session.email, session.role

        access_token = create_access_token(principal_id, email, role, session_id, expire_seconds=self._access_expire)
        return RefreshResult(
            access_token=access_token,
            principal={"id": principal_id, "email": email, "role": role},
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Delete every idle-expired session. Returns the number removed."""
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if self._idle_expired(s)]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info("Cleaned up %d expired sessions", len(expired))
        return len(expired)

    def stats(self) -> dict:
        now = self._clock.now()
        with self._lock:
            sessions = list(self._sessions.values())
        return {
            "totalActiveSessions": len(sessions),
            "sessions": [
                {
                    "sessionId": s.session_id[:8],
                    "principalId": s.principal_id,
                    "email": s.email,
                    "createdAt": s.created_at.isoformat(),
                    "lastActivity": s.last_activity_at.isoformat(),
                    "ageMinutes": int((now - s.created_at).total_seconds() // 60),
                    "idleMinutes": int((now - s.last_activity_at).total_seconds() // 60),
                }
                for s in sessions
            ],
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------

    def _idle_expired(self, session: Session) -> bool:
        idle = (self._clock.now() - session.last_activity_at).total_seconds()
        return idle > self.idle_timeout_seconds

    def _live_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._idle_expired(session):
            del self._sessions[session_id]
            return None
        return session
