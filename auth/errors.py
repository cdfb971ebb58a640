"""
auth/errors.py -- Security failure taxonomy.

Every failure the security flows can produce is a SecurityError subclass with
a stable machine-checkable code and HTTP status. The API layer renders them
uniformly via SecurityError.to_dict():

    {"error": <message>, "code": <code>, ...context}

Context keys are camelCase because they are part of the public JSON contract
(e.g. remainingAttempts, lockedUntil, validationErrors).

None of these are retried internally. AccountLocked is self-healing once
lockedUntil passes; SessionExpired is kept distinct from TokenInvalid so the
client can prompt for re-authentication specifically.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from typing import Any


class SecurityError(Exception):
    """Base class for security failures mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "security_error"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.error_code, **self.context}


class AuthenticationFailure(SecurityError):
    """Bad credentials or unknown principal (401). Caller may retry."""

    status_code = 401
    error_code = "bad_credentials"


class AccountLocked(SecurityError):
    """Too many failed attempts for the identifier (403)."""

    status_code = 403
    error_code = "account_locked"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, context={"locked": True, **(context or {})})


class AccountSuspended(SecurityError):
    """Principal has been banned by an administrator (403)."""

    status_code = 403
    error_code = "account_suspended"


class RoleMismatch(SecurityError):
    status_code = 403
    error_code = "role_mismatch"


class Forbidden(SecurityError):
    status_code = 403
    error_code = "forbidden"


class TokenInvalid(SecurityError):
    """Malformed, expired, or mis-signed token (401). Never retried."""

    status_code = 401
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid or expired token.", *, expired: bool = False) -> None:
        super().__init__(message, context={"tokenExpired": True} if expired else None)
        self.expired = expired


class InvalidRefresh(TokenInvalid):
    """Refresh token rejected: bad signature, missing session, hash mismatch, or idle session."""

    error_code = "invalid_refresh"

    def __init__(self, message: str = "Invalid or expired refresh token.") -> None:
        super().__init__(message)


class SessionExpired(SecurityError):
    """Session removed after idle timeout (401)."""

    status_code = 401
    error_code = "session_expired"

    def __init__(self, message: str = "Session expired due to inactivity.") -> None:
        super().__init__(message, context={"sessionExpired": True})


class CSRFViolation(SecurityError):
    """Missing or mismatched anti-forgery token (403). Never bypassed."""

    status_code = 403
    error_code = "csrf_violation"


class PolicyViolation(SecurityError):
    """New password rejected by the strength policy (400)."""

    status_code = 400
    error_code = "password_policy"

    def __init__(self, message: str, *, errors: list[str], score: int | None = None) -> None:
        context: dict[str, Any] = {"validationErrors": list(errors)}
        if score is not None:
            context["passwordStrength"] = score
        super().__init__(message, context=context)
        self.errors = list(errors)
        self.score = score


class PasswordReused(PolicyViolation):
    """New password matches one of the recent history entries (400)."""

    error_code = "password_reused"

    def __init__(self) -> None:
        super().__init__(
            "Password has been used before.",
            errors=["Please choose a password you have not used previously"],
        )


class PrincipalNotFound(SecurityError):
    status_code = 404
    error_code = "not_found"


class PrincipalConflict(SecurityError):
    status_code = 409
    error_code = "conflict"
