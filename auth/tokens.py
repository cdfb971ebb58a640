"""
auth/tokens.py -- JWT, password hashing, and cookie utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY,
       refresh tokens with REFRESH_SECRET_KEY, and both carry a "typ" claim,
       so neither can be presented in place of the other. Claims: sub
       (principal id as a string, jose requires sub to be a string), email,
       role (access only), sid (session id), typ, exp. Expiry is checked by
       jose against real time; the injected Clock governs only the
       server-side idle and lockout windows.

       decode_token() raises TokenInvalid instead of returning None so the
       coordinator can tell an expired access token (tokenExpired) apart from
       a forged one.

  Refresh binding: the session stores sha256(refresh_token), never the token
       itself. A refresh token is honoured only while that hash still matches,
       which kills stolen refresh tokens the moment the session is destroyed.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in the login flow so response time does
       not reveal whether an account exists [C1].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenInvalid
from core.config import get_settings

logger = logging.getLogger("certguard.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
CSRF_COOKIE = "XSRF-TOKEN"

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes; the API layer caps passwords at 128
    characters and the policy engine scores the full string.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Malformed hashes (e.g. a corrupted history entry) count as no match.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("certguard_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against a throwaway hash.

    Called when the account does not exist so the unknown-account path costs
    the same as a wrong-password path.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(principal_id: int, email: str, role: str, session_id: str, expire_seconds: int = 0) -> str:
    """Encode a short-lived access token bound to session_id.

    Args:
        expire_seconds: If 0 (default), uses Settings.jwt_expire (15 minutes).
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.jwt_expire
    payload = {
        "sub": str(principal_id),
        "email": email,
        "role": role,
        "sid": session_id,
        "typ": TOKEN_TYPE_ACCESS,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def create_refresh_token(principal_id: int, email: str, session_id: str, expire_seconds: int = 0) -> str:
    """Encode a long-lived refresh token bound to session_id.

    The role is deliberately omitted: refresh always re-reads the role stored
    on the session. jti makes every issued refresh token unique.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.jwt_refresh_expire
    payload = {
        "sub": str(principal_id),
        "email": email,
        "sid": session_id,
        "typ": TOKEN_TYPE_REFRESH,
        "jti": secrets.token_hex(16),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.refresh_secret_key, algorithm=_ALGORITHM)


def decode_token(token: str, token_type: str = TOKEN_TYPE_ACCESS, verify_exp: bool = True) -> dict:
    """Verify signature, expiry, and type of a token and return its claims.

    verify_exp=False still checks the signature and type. Logout uses it to
    find the session an expired access token names.

    Raises:
        TokenInvalid(expired=True): signature fine but exp has passed.
        TokenInvalid: anything else (bad signature, wrong type, missing claims).
    """
    key = _settings.refresh_secret_key if token_type == TOKEN_TYPE_REFRESH else _settings.secret_key
    try:
        payload = jwt.decode(token, key, algorithms=[_ALGORITHM], options={"verify_exp": verify_exp})
    except ExpiredSignatureError as exc:
        raise TokenInvalid("Token expired.", expired=True) from exc
    except JWTError as exc:
        raise TokenInvalid() from exc
    if payload.get("typ") != token_type or "sid" not in payload or "sub" not in payload:
        raise TokenInvalid()
    try:
        payload["principal_id"] = int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise TokenInvalid() from exc
    return payload


def hash_refresh_token(token: str) -> str:
    """Return the sha256 hex digest stored on the session for a refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def refresh_hash_matches(token: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_refresh_token(token), stored_hash)


def new_session_id() -> str:
    """32 random bytes as 64 hex characters."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_access_cookie(response, token: str) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST.
    secure: only over HTTPS when SECURE_COOKIES=true.
    max_age: matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.jwt_expire,
        path="/",
    )


def set_session_cookies(response, access_token: str, refresh_token: str) -> None:
    """Write both login cookies. The refresh cookie lives as long as the refresh JWT."""
    set_access_cookie(response, access_token)
    response.set_cookie(
        REFRESH_COOKIE,
        value=refresh_token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.jwt_refresh_expire,
        path="/",
    )


def clear_session_cookies(response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            httponly=True,
            samesite="lax",
            secure=_settings.secure_cookies,
        )


def set_csrf_cookie(response, token: str, max_age: int) -> None:
    """Write the double-submit CSRF cookie.

    httponly=False on purpose: the frontend must read XSRF-TOKEN and echo it
    back in the X-CSRF-Token header.
    """
    response.set_cookie(
        CSRF_COOKIE,
        value=token,
        httponly=False,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=max_age,
        path="/",
    )
