"""
tests/test_auth_routes.py -- Integration tests for /api/v1/auth/*.

Covers:
  - End-to-end lockout for alice@example.com (5th -> 403 locked, 6th -> 403, expiry -> 200)
  - Login response shape, cookies, no-store
  - Idle session -> 401 sessionExpired; refresh via body and cookie; logout kills refresh
  - Logout still finds the session after the access token expires, or from the refresh token alone
  - CSRF: token issue, 403 without / with a wrong header, X-XSRF-Token alias, _csrf body field
  - change-password: 401 wrong current, 400 policy with details, 400 reused, 200 success
  - register, check-password-strength, ban, role change, security-stats
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import jwt

from auth.tokens import TOKEN_TYPE_ACCESS, decode_token
from conftest import STRONG_PASSWORD, make_user
from core.config import get_settings

LOGIN = "/api/v1/auth/login"
REFRESH = "/api/v1/auth/refresh"
LOGOUT = "/api/v1/auth/logout"
ME = "/api/v1/auth/me"
CSRF = "/api/v1/auth/csrf-token"
CHANGE_PASSWORD = "/api/v1/auth/change-password"
SET_PASSWORD = "/api/v1/auth/set-password"


# ---------------------------------------------------------------------------
# Lockout scenario
# ---------------------------------------------------------------------------


def test_lockout_end_to_end(api):
    make_user(api.users)

    for expected_remaining in (4, 3, 2, 1):
        resp = api.login("alice@example.com", "Wrong#Pass1")
        assert resp.status_code == 401
        body = resp.json()
        assert body["remainingAttempts"] == expected_remaining
        assert body["code"] == "bad_credentials"

    fifth = api.login("alice@example.com", "Wrong#Pass1")
    assert fifth.status_code == 403
    assert fifth.json()["locked"] is True
    assert "lockedUntil" in fifth.json()

    sixth = api.login("alice@example.com", STRONG_PASSWORD)
    assert sixth.status_code == 403
    assert sixth.json()["locked"] is True

    api.clock.advance(minutes=15, seconds=1)
    ok = api.login("alice@example.com", STRONG_PASSWORD)
    assert ok.status_code == 200
    assert api.security.lockout.get("alice@example.com") is None


def test_locked_unknown_account_looks_the_same(api):
    for _ in range(4):
        assert api.login("ghost@example.com", "Wrong#Pass1").status_code == 401
    assert api.login("ghost@example.com", "Wrong#Pass1").status_code == 403
    assert api.login("ghost@example.com", "Wrong#Pass1").json()["locked"] is True


def test_login_without_email_locks_client_ip(api):
    for _ in range(5):
        api.client.post(LOGIN, json={"password": "Wrong#Pass1"})
    assert api.security.lockout.check_lock("testclient") is not None


# ---------------------------------------------------------------------------
# Login / session
# ---------------------------------------------------------------------------


def test_login_sets_cookies_and_returns_tokens(api):
    make_user(api.users)
    resp = api.login("alice@example.com")
    assert resp.status_code == 200
    body = resp.json()
    assert body["accessToken"]
    assert body["refreshToken"]
    assert body["user"]["email"] == "alice@example.com"
    assert body["user"]["role"] == "student"
    assert resp.headers["cache-control"] == "no-store"

    set_cookie = resp.headers.get_list("set-cookie")
    access = next(c for c in set_cookie if c.startswith("access_token="))
    refresh = next(c for c in set_cookie if c.startswith("refresh_token="))
    assert "HttpOnly" in access
    assert "Max-Age=900" in access
    assert "HttpOnly" in refresh
    assert f"Max-Age={30 * 24 * 3600}" in refresh


def test_me_uses_cookie_session(api):
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.get(ME)
    assert resp.status_code == 200
    assert resp.json()["user"]["email"] == "alice@example.com"


def test_me_accepts_bearer_token(api):
    make_user(api.users)
    token = api.login("alice@example.com").json()["accessToken"]
    api.client.cookies.clear()
    resp = api.client.get(ME, headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200


def test_me_requires_authentication(api):
    resp = api.client.get(ME)
    assert resp.status_code == 401
    assert resp.json()["code"] == "bad_credentials"


def test_idle_session_returns_session_expired(api):
    make_user(api.users)
    api.login("alice@example.com")
    api.clock.advance(minutes=31)
    resp = api.client.get(ME)
    assert resp.status_code == 401
    assert resp.json()["sessionExpired"] is True
    assert resp.json()["code"] == "session_expired"


def test_refresh_with_body(api):
    make_user(api.users)
    refresh_token = api.login("alice@example.com").json()["refreshToken"]
    api.client.cookies.clear()
    resp = api.client.post(REFRESH, json={"refreshToken": refresh_token})
    assert resp.status_code == 200
    body = resp.json()
    assert body["accessToken"]
    assert body["user"]["email"] == "alice@example.com"
    assert any(c.startswith("access_token=") for c in resp.headers.get_list("set-cookie"))


def test_refresh_with_cookie(api):
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.post(REFRESH)
    assert resp.status_code == 200


def test_refresh_missing_token(api):
    resp = api.client.post(REFRESH)
    assert resp.status_code == 400
    assert resp.json()["code"] == "missing_refresh_token"


def test_refresh_invalid_token(api):
    resp = api.client.post(REFRESH, json={"refreshToken": "garbage"})
    assert resp.status_code == 401
    assert "error" in resp.json()


def test_logout_invalidates_refresh_token(api):
    make_user(api.users)
    refresh_token = api.login("alice@example.com").json()["refreshToken"]
    resp = api.client.post(LOGOUT)
    assert resp.status_code == 200
    assert len(api.security.sessions) == 0

    resp = api.client.post(REFRESH, json={"refreshToken": refresh_token})
    assert resp.status_code == 401
    assert resp.json()["code"] == "invalid_refresh"


def _expired_access_token(user, session_id: str) -> str:
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "sid": session_id,
        "typ": TOKEN_TYPE_ACCESS,
        "exp": datetime.now(timezone.utc) - timedelta(minutes=1),
    }
    return jwt.encode(payload, get_settings().secret_key, algorithm="HS256")


def test_logout_after_access_token_expired(api):
    alice = make_user(api.users)
    refresh_token = api.login("alice@example.com").json()["refreshToken"]
    session_id = api.users.get_by_id(alice.id).session_id
    expired = {"Authorization": f"Bearer {_expired_access_token(alice, session_id)}"}
    api.client.cookies.clear()

    assert api.client.get(ME, headers=expired).status_code == 401
    assert api.client.post(LOGOUT, headers=expired).status_code == 200
    assert len(api.security.sessions) == 0
    assert api.users.get_by_id(alice.id).refresh_token_hash is None
    assert api.client.post(REFRESH, json={"refreshToken": refresh_token}).status_code == 401


def test_logout_with_refresh_token_in_body(api):
    make_user(api.users)
    refresh_token = api.login("alice@example.com").json()["refreshToken"]
    api.client.cookies.clear()

    assert api.client.post(LOGOUT, json={"refreshToken": refresh_token}).status_code == 200
    assert len(api.security.sessions) == 0
    assert api.client.post(REFRESH, json={"refreshToken": refresh_token}).status_code == 401


def test_logout_without_session_is_ok(api):
    assert api.client.post(LOGOUT).status_code == 200


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------


def test_csrf_token_endpoint(api):
    resp = api.client.get(CSRF)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["csrfToken"]) == 64
    assert body["expiresIn"] == 3600 * 1000
    cookie = next(c for c in resp.headers.get_list("set-cookie") if c.startswith("XSRF-TOKEN="))
    assert "HttpOnly" not in cookie
    assert "samesite=strict" in cookie.lower()


def test_state_change_without_csrf_header_is_rejected(api):
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.post(CHANGE_PASSWORD, json={"oldPassword": STRONG_PASSWORD, "password": "Brand#New#Pass7"})
    assert resp.status_code == 403
    assert resp.json()["code"] == "csrf_violation"


def test_state_change_with_wrong_csrf_header_is_rejected(api):
    make_user(api.users)
    api.login("alice@example.com")
    api.csrf_headers()
    resp = api.client.post(
        CHANGE_PASSWORD,
        json={"oldPassword": STRONG_PASSWORD, "password": "Brand#New#Pass7"},
        headers={"X-CSRF-Token": "0" * 64},
    )
    assert resp.status_code == 403


def test_csrf_token_issued_before_login_is_not_valid_after(api):
    make_user(api.users)
    anonymous = api.csrf_headers()
    api.login("alice@example.com")
    resp = api.client.post(
        CHANGE_PASSWORD,
        json={"oldPassword": STRONG_PASSWORD, "password": "Brand#New#Pass7"},
        headers=anonymous,
    )
    assert resp.status_code == 403


def test_xsrf_header_alias_is_accepted(api):
    make_user(api.users)
    api.login("alice@example.com")
    token = api.csrf_headers()["X-CSRF-Token"]
    resp = api.client.post(
        CHANGE_PASSWORD,
        json={"oldPassword": STRONG_PASSWORD, "password": "Brand#New#Pass7"},
        headers={"X-XSRF-Token": token},
    )
    assert resp.status_code == 200


def test_csrf_check_requires_authentication_first(api):
    resp = api.client.post(CHANGE_PASSWORD, json={"oldPassword": "x", "password": "y"})
    assert resp.status_code == 401


def test_csrf_disabled_by_configuration(api):
    make_user(api.users)
    api.login("alice@example.com")
    api.security.csrf_enabled = False
    resp = api.client.post(CHANGE_PASSWORD, json={"oldPassword": STRONG_PASSWORD, "password": "Brand#New#Pass7"})
    assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------


def test_change_password_wrong_current(api):
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.post(
        CHANGE_PASSWORD,
        json={"oldPassword": "Wrong#Pass1", "password": "Brand#New#Pass7"},
        headers=api.csrf_headers(),
    )
    assert resp.status_code == 401


def test_change_password_policy_violation(api):
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.post(
        CHANGE_PASSWORD,
        json={"oldPassword": STRONG_PASSWORD, "password": "password"},
        headers=api.csrf_headers(),
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["validationErrors"]
    assert "passwordStrength" in body
    assert body["code"] == "password_policy"


def test_change_password_reused(api):
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.post(
        CHANGE_PASSWORD,
        json={"oldPassword": STRONG_PASSWORD, "password": STRONG_PASSWORD},
        headers=api.csrf_headers(),
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "password_reused"
    assert resp.json()["validationErrors"]


def test_change_password_success_then_login_with_new(api):
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.post(
        CHANGE_PASSWORD,
        json={"oldPassword": STRONG_PASSWORD, "password": "Brand#New#Pass7"},
        headers=api.csrf_headers(),
    )
    assert resp.status_code == 200
    assert api.login("alice@example.com", "Brand#New#Pass7").status_code == 200
    assert api.login("alice@example.com", STRONG_PASSWORD).status_code == 401


def test_csrf_token_in_json_body_is_accepted(api):
    make_user(api.users)
    api.login("alice@example.com")
    token = api.csrf_headers()["X-CSRF-Token"]
    resp = api.client.post(
        CHANGE_PASSWORD,
        json={"oldPassword": STRONG_PASSWORD, "password": "Brand#New#Pass7", "_csrf": token},
    )
    assert resp.status_code == 200


def test_set_password_for_account_without_password(api):
    pending = make_user(api.users, email="sso@example.com", password=None, requires_password_set=True)
    issued = api.security.sessions.create(pending)
    bearer = {"Authorization": f"Bearer {issued.access_token}"}
    token = api.client.get(CSRF, headers=bearer).json()["csrfToken"]
    resp = api.client.post(
        SET_PASSWORD,
        json={"password": "Brand#New#Pass7"},
        headers={**bearer, "X-CSRF-Token": token},
    )
    assert resp.status_code == 200
    assert api.users.get_by_id(pending.id).requires_password_set is False


# ---------------------------------------------------------------------------
# Register / strength
# ---------------------------------------------------------------------------


def test_register_creates_account_and_session(api):
    resp = api.client.post(
        "/api/v1/auth/register",
        json={"email": "new@example.com", "password": "Brand#New#Pass7", "role": "employer"},
    )
    assert resp.status_code == 201
    assert resp.json()["user"]["role"] == "employer"
    assert api.client.get(ME).status_code == 200


def test_register_rejects_admin_role(api):
    resp = api.client.post(
        "/api/v1/auth/register",
        json={"email": "new@example.com", "password": "Brand#New#Pass7", "role": "admin"},
    )
    assert resp.status_code == 422


def test_register_duplicate(api):
    make_user(api.users)
    resp = api.client.post(
        "/api/v1/auth/register",
        json={"email": "alice@example.com", "password": "Brand#New#Pass7"},
    )
    assert resp.status_code == 409


def test_check_password_strength(api):
    resp = api.client.post("/api/v1/auth/check-password-strength", json={"password": "Password123!"})
    assert resp.status_code == 200
    assert resp.json() == {"score": 100, "level": "strong", "valid": True, "errors": []}


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def test_ban_destroys_target_sessions(api):
    make_user(api.users, email="admin@example.com", role="admin")
    target = make_user(api.users, email="bob@example.com")
    bob_refresh = api.login("bob@example.com").json()["refreshToken"]

    api.client.cookies.clear()
    api.login("admin@example.com")
    resp = api.client.post(f"/api/v1/auth/users/{target.id}/ban", headers=api.csrf_headers())
    assert resp.status_code == 200
    assert resp.json()["user"]["isBanned"] is True

    assert api.client.post(REFRESH, json={"refreshToken": bob_refresh}).status_code == 401
    assert api.login("bob@example.com").status_code == 403


def test_ban_requires_admin(api):
    target = make_user(api.users, email="bob@example.com")
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.post(f"/api/v1/auth/users/{target.id}/ban", headers=api.csrf_headers())
    assert resp.status_code == 403
    assert resp.json()["userRole"] == "student"


def test_role_change_reaches_next_refresh(api):
    make_user(api.users, email="admin@example.com", role="admin")
    target = make_user(api.users, email="bob@example.com", role="registrar")
    bob_refresh = api.login("bob@example.com").json()["refreshToken"]

    api.client.cookies.clear()
    api.login("admin@example.com")
    resp = api.client.post(
        f"/api/v1/auth/users/{target.id}/role",
        json={"role": "student"},
        headers=api.csrf_headers(),
    )
    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == "student"

    api.client.cookies.clear()
    resp = api.client.post(REFRESH, json={"refreshToken": bob_refresh})
    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == "student"
    assert decode_token(resp.json()["accessToken"], TOKEN_TYPE_ACCESS)["role"] == "student"


def test_role_change_rejects_unknown_role(api):
    make_user(api.users, email="admin@example.com", role="admin")
    target = make_user(api.users, email="bob@example.com")
    api.login("admin@example.com")
    resp = api.client.post(
        f"/api/v1/auth/users/{target.id}/role",
        json={"role": "superuser"},
        headers=api.csrf_headers(),
    )
    assert resp.status_code == 422


def test_role_change_requires_admin(api):
    target = make_user(api.users, email="bob@example.com")
    make_user(api.users)
    api.login("alice@example.com")
    resp = api.client.post(
        f"/api/v1/auth/users/{target.id}/role",
        json={"role": "admin"},
        headers=api.csrf_headers(),
    )
    assert resp.status_code == 403


def test_security_stats_for_admin(api):
    make_user(api.users, email="admin@example.com", role="admin")
    api.login("admin@example.com")
    resp = api.client.get("/api/v1/auth/security-stats")
    assert resp.status_code == 200
    body = resp.json()
    assert body["sessions"]["totalActiveSessions"] == 1
    assert body["trackedIPs"] == 1
