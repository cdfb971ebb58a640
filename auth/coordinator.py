"""
auth/coordinator.py -- Request flows composed from the four security stores.

SecurityCoordinator is the only place that knows the order of checks. Route
handlers call one method per request and render whatever SecurityError it
raises; they never touch the stores directly.

Login:
    RECEIVED
      -> LOCK_CHECK        locked                       => AccountLocked (403)
      -> CREDENTIAL_CHECK  mismatch                     => record_failure, AuthenticationFailure (401, remainingAttempts)
                           mismatch that locks it now   => AccountLocked (403)
      -> SUCCESS           reset lockout, create session, stamp last_login

The lock check runs before the account lookup and keys on the email (or IP),
so locked and unlocked identifiers behave the same whether or not the
account exists. Unknown accounts still pay for one bcrypt comparison.

Password change:
    CREDENTIAL_CHECK(old) -> POLICY_CHECK(new) -> REUSE_CHECK -> COMMIT
Every stage before COMMIT is read-only; the principal row is written exactly
once, at COMMIT, so an aborted change leaves nothing half-applied.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import NoReturn

from auth.csrf import CSRFTokenStore, requires_csrf
from auth.errors import (
    AccountLocked,
    AccountSuspended,
    AuthenticationFailure,
    CSRFViolation,
    Forbidden,
    InvalidRefresh,
    PolicyViolation,
    PrincipalConflict,
    PrincipalNotFound,
    RoleMismatch,
    SessionExpired,
    TokenInvalid,
)
from auth.events import RecentEventsSink, SecurityEventEmitter, SecurityEventType
from auth.lockout import IPActivityTracker, LockoutTracker, identifier_for
from auth.models import AuthContext, IssuedSession, PasswordScore, RefreshResult, RequestMeta, User
from auth.password_policy import PasswordPolicyEngine
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import (
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_REFRESH,
    burn_password_check,
    decode_token,
    hash_password,
    hash_refresh_token,
    refresh_hash_matches,
    verify_password,
)
from core.clock import Clock, SystemClock
from core.config import Settings

logger = logging.getLogger("certguard.coordinator")

_NO_META = RequestMeta()


class SecurityCoordinator:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        lockout: LockoutTracker,
        csrf: CSRFTokenStore,
        policy: PasswordPolicyEngine,
        events: SecurityEventEmitter,
        ip_activity: IPActivityTracker | None = None,
        csrf_enabled: bool = True,
        root_admin_email: str = "root@system",
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.lockout = lockout
        self.csrf = csrf
        self.policy = policy
        self.events = events
        self.ip_activity = ip_activity
        self.csrf_enabled = csrf_enabled
        self.root_admin_email = root_admin_email.lower()

    # ------------------------------------------------------------------
    # Login / register
    # ------------------------------------------------------------------

    def login(
        self,
        email: str | None,
        password: str,
        role: str | None = None,
        meta: RequestMeta = _NO_META,
    ) -> tuple[User, IssuedSession]:
        email = (email or "").strip().lower() or None
        identifier = identifier_for(email, meta.ip)

        lock = self.lockout.check_lock(identifier)
        if lock is not None:
            self._emit(
                SecurityEventType.ACCOUNT_LOCKED,
                {"email": email, "remainingMinutes": lock.remaining_minutes},
                meta,
            )
            raise AccountLocked(
                f"Too many failed login attempts. Account locked for {lock.remaining_minutes} more minutes.",
                context={"lockedUntil": lock.locked_until.isoformat(), "attempts": lock.attempts},
            )

        user = self.users.get_by_email(email) if email else None
        if user is None or not user.hashed_password:
            burn_password_check(password)
            self._fail_login(identifier, email, meta)
        elif not verify_password(password, user.hashed_password) or not user.is_active:
            self._fail_login(identifier, email, meta)

        if user.is_banned:
            raise AccountSuspended("Account suspended. Contact support.")
        if role and user.role != role and user.role != "admin":
            raise RoleMismatch(
                f"Role mismatch: this account is registered as '{user.role}', "
                f"but you are trying to log in as '{role}'."
            )

        self.lockout.reset(identifier)
        issued = self._open_session(user)
        self._emit(SecurityEventType.SUCCESSFUL_LOGIN, {"email": user.email, "role": user.role}, meta, user)
        return self.users.get_by_id(user.id) or user, issued

    def register(
        self,
        email: str,
        password: str,
        role: str,
        meta: RequestMeta = _NO_META,
    ) -> tuple[User, IssuedSession]:
        email = email.strip().lower()
        if self.users.get_by_email(email) is not None:
            raise PrincipalConflict("User already exists.")
        self.policy.enforce(password)
        hashed = hash_password(password)
        user_id = self.users.create_user(
            User(email=email, role=role, hashed_password=hashed, password_history=[hashed])
        )
        user = self.users.get_by_id(user_id)
        if user is None:
            raise PrincipalNotFound("User not found after write.")
        issued = self._open_session(user)
        self._emit(SecurityEventType.SUCCESSFUL_LOGIN, {"email": email, "action": "register"}, meta, user)
        return user, issued

    # ------------------------------------------------------------------
    # Per-request authentication
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str, meta: RequestMeta = _NO_META) -> AuthContext:
        """Verify an access token against live session state and touch the session.

        Raises:
            TokenInvalid: bad signature, wrong type, or expired JWT.
            SessionExpired: the session was idle past the timeout or logged out.
            AuthenticationFailure: the principal no longer exists or is inactive.
            AccountSuspended: the principal is banned.
        """
        try:
            claims = decode_token(access_token, TOKEN_TYPE_ACCESS)
        except TokenInvalid as exc:
            self._emit(SecurityEventType.INVALID_TOKEN, {"expired": exc.expired}, meta)
            raise

        session_id = claims["sid"]
        if not self.sessions.is_valid(session_id):
            self._emit(SecurityEventType.SESSION_EXPIRED, {"email": claims.get("email")}, meta)
            raise SessionExpired()
        self.sessions.touch(session_id)

        user = self.users.get_by_id(claims["principal_id"])
        if user is None or not user.is_active:
            raise AuthenticationFailure("User no longer exists.")
        if user.is_banned:
            raise AccountSuspended("Account suspended. Contact support.")
        return AuthContext(user=user, session_id=session_id, claims=claims)

    def refresh(self, refresh_token: str, meta: RequestMeta = _NO_META) -> RefreshResult:
        try:
            return self.sessions.refresh(refresh_token)
        except InvalidRefresh:
            self._emit(SecurityEventType.INVALID_TOKEN, {"kind": "refresh"}, meta)
            raise

    def logout_tokens(self, access_token: str | None = None, refresh_token: str | None = None) -> bool:
        """Log out the session named by whichever token the caller still holds.

        The access token is read with expiry ignored, since a session can
        outlive its 15-minute access token. A refresh token only counts when
        it is the one bound to the session. Returns True if a session was found.
        """
        if access_token:
            try:
                claims = decode_token(access_token, TOKEN_TYPE_ACCESS, verify_exp=False)
            except TokenInvalid:
                claims = None
            if claims is not None:
                self.logout(claims["sid"], claims["principal_id"])
                return True
        if refresh_token:
            try:
                claims = decode_token(refresh_token, TOKEN_TYPE_REFRESH)
            except TokenInvalid:
                return False
            user = self.users.get_by_id(claims["principal_id"])
            session = self.sessions.get(claims["sid"])
            bound_hash = session.refresh_token_hash if session is not None else None
            if bound_hash is None and user is not None and user.session_id == claims["sid"]:
                bound_hash = user.refresh_token_hash
            if refresh_hash_matches(refresh_token, bound_hash):
                self.logout(claims["sid"], claims["principal_id"])
                return True
        return False

    def logout(self, session_id: str, principal_id: int | None = None) -> None:
        self.sessions.invalidate(session_id)
        if principal_id is None:
            return
        user = self.users.get_by_id(principal_id)
        if user is not None and user.session_id == session_id:
            self.users.clear_session_reference(principal_id)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def check_password_strength(self, password: str) -> PasswordScore:
        return self.policy.score(password)

    def change_password(
        self,
        principal_id: int,
        old_password: str,
        new_password: str,
        meta: RequestMeta = _NO_META,
    ) -> User:
        user = self._require_user(principal_id)
        if not user.hashed_password or not verify_password(old_password, user.hashed_password):
            self._emit(
                SecurityEventType.PASSWORD_CHANGE_FAILED,
                {"email": user.email, "reason": "Incorrect current password"},
                meta,
                user,
            )
            raise AuthenticationFailure("Incorrect current password.")
        return self._commit_password(user, new_password, "change-password", meta)

    def set_password(self, principal_id: int, new_password: str, meta: RequestMeta = _NO_META) -> User:
        user = self._require_user(principal_id)
        return self._commit_password(user, new_password, "set-password", meta)

    def _commit_password(self, user: User, new_password: str, action: str, meta: RequestMeta) -> User:
        try:
            self.policy.enforce(new_password, user.password_history)
        except PolicyViolation as exc:
            self._emit(
                SecurityEventType.PASSWORD_CHANGE_FAILED,
                {"email": user.email, "reason": exc.error_code, "action": action},
                meta,
                user,
            )
            raise

        new_hash = hash_password(new_password)
        history = self.policy.record_new_password(new_hash, user.password_history)
        self.users.update_user(
            user.id,
            hashed_password=new_hash,
            password_history=history,
            requires_password_set=False,
        )
        self._emit(SecurityEventType.PASSWORD_CHANGED, {"email": user.email, "action": action}, meta, user)
        return self._require_user(user.id)

    # ------------------------------------------------------------------
    # CSRF
    # ------------------------------------------------------------------

    def issue_csrf(self, principal_key: str) -> str:
        return self.csrf.issue(principal_key)

    def verify_csrf(self, principal_key: str, presented: str | None, method: str, meta: RequestMeta = _NO_META) -> None:
        """Raise CSRFViolation unless the request is exempt or presents the live token."""
        if not self.csrf_enabled or not requires_csrf(method):
            return
        if not presented:
            self._emit(SecurityEventType.CSRF_VIOLATION, {"reason": "missing"}, meta)
            raise CSRFViolation("CSRF token missing.")
        if not self.csrf.validate(principal_key, presented):
            self._emit(SecurityEventType.CSRF_VIOLATION, {"reason": "mismatch"}, meta)
            raise CSRFViolation("Invalid CSRF token.")

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def toggle_ban(self, principal_id: int, actor: User, meta: RequestMeta = _NO_META) -> User:
        """Ban or unban a principal. Banning kills every session and the stored refresh reference."""
        target = self._require_user(principal_id)
        self._guard_admin_change(target, actor, "ban")

        banning = not target.is_banned
        if banning and target.role == "admin" and self.users.count_active_admins() <= 1:
            raise Forbidden("Cannot ban the last active administrator.")
        if banning:
            self.sessions.invalidate_principal(target.id)
            self.csrf.revoke(str(target.id))
            self.users.update_user(target.id, is_banned=True, session_id=None, refresh_token_hash=None)
        else:
            self.users.update_user(target.id, is_banned=False)
        self._emit(
            SecurityEventType.USER_BANNED if banning else SecurityEventType.USER_UNBANNED,
            {"targetUser": target.email, "userId": target.id},
            meta,
            actor,
        )
        return self._require_user(target.id)

    def change_role(self, principal_id: int, role: str, actor: User, meta: RequestMeta = _NO_META) -> User:
        """Persist a new role and push it onto the principal's live sessions.

        Existing access tokens keep their old role claim until they expire;
        the next refresh mints one with the new role.
        """
        target = self._require_user(principal_id)
        self._guard_admin_change(target, actor, "change the role of")
        if target.role == role:
            return target
        if target.role == "admin" and not target.is_banned and self.users.count_active_admins() <= 1:
            raise Forbidden("Cannot demote the last active administrator.")

        self.users.update_user(target.id, role=role)
        self.sessions.update_role(target.id, role)
        self._emit(
            SecurityEventType.USER_ROLE_UPDATED,
            {"targetUser": target.email, "userId": target.id, "oldRole": target.role, "newRole": role},
            meta,
            actor,
        )
        return self._require_user(target.id)

    def security_stats(self) -> dict:
        return {
            "sessions": self.sessions.stats(),
            "lockouts": self.lockout.stats(),
            "csrfTokens": len(self.csrf),
            "trackedIPs": len(self.ip_activity) if self.ip_activity is not None else 0,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_session(self, user: User) -> IssuedSession:
        issued = self.sessions.create(user)
        self.users.record_login(user.id, issued.session_id, hash_refresh_token(issued.refresh_token))
        return issued

    def _fail_login(self, identifier: str, email: str | None, meta: RequestMeta) -> NoReturn:
        info = self.lockout.record_failure(identifier)
        self._emit(
            SecurityEventType.FAILED_LOGIN,
            {"email": email, "attempts": info.attempts, "locked": info.locked},
            meta,
        )
        if info.locked:
            self._emit(SecurityEventType.ACCOUNT_LOCKED, {"email": email, "attempts": info.attempts}, meta)
            raise AccountLocked(
                "Too many failed attempts. Account has been locked.",
                context={
                    "lockedUntil": info.locked_until.isoformat() if info.locked_until else None,
                    "attempts": info.attempts,
                },
            )
        raise AuthenticationFailure(
            "Invalid credentials.",
            context={"remainingAttempts": info.remaining_attempts},
        )

    def _guard_admin_change(self, target: User, actor: User, action: str) -> None:
        if target.email == self.root_admin_email:
            raise Forbidden(f"Cannot {action} the root account.")
        if target.id == actor.id:
            raise Forbidden(f"You cannot {action} your own account.")

    def _require_user(self, principal_id: int) -> User:
        user = self.users.get_by_id(principal_id)
        if user is None:
            raise PrincipalNotFound("User not found.")
        return user

    def _emit(self, event_type: SecurityEventType, details: dict, meta: RequestMeta, user: User | None = None) -> None:
        self.events.emit(
            event_type,
            details,
            ip=meta.ip,
            user_agent=meta.user_agent,
            principal_id=user.id if user is not None else None,
            email=user.email if user is not None else None,
        )


def build_coordinator(
    settings: Settings,
    users: UserStore,
    clock: Clock | None = None,
    events: SecurityEventEmitter | None = None,
) -> SecurityCoordinator:
    """Wire the four stores from Settings. Used by the app lifespan and tests."""
    clock = clock or SystemClock()
    if events is None:
        events = SecurityEventEmitter(sinks=[RecentEventsSink()], clock=clock)
    return SecurityCoordinator(
        users=users,
        sessions=SessionStore(
            clock=clock,
            idle_timeout_seconds=settings.session_timeout_seconds,
            access_expire_seconds=settings.jwt_expire,
            refresh_expire_seconds=settings.jwt_refresh_expire,
        ),
        lockout=LockoutTracker(
            clock=clock,
            max_attempts=settings.max_login_attempts,
            lockout_seconds=settings.lockout_duration_seconds,
        ),
        csrf=CSRFTokenStore(clock=clock),
        policy=PasswordPolicyEngine(
            min_length=settings.password_min_length,
            enforce_strength=settings.require_strong_password,
        ),
        events=events,
        ip_activity=IPActivityTracker(clock=clock, events=events),
        csrf_enabled=settings.enable_csrf_protection,
        root_admin_email=settings.root_admin_email,
    )
