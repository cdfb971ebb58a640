"""
api/routes/v1/auth.py -- Session, CSRF, and password REST endpoints.

Routes:
  POST /api/v1/auth/login                    -- password login; sets access + refresh cookies
  POST /api/v1/auth/register                 -- self-service signup (student / employer)
  POST /api/v1/auth/refresh                  -- refresh token -> new access token
  POST /api/v1/auth/logout                   -- destroys the session; clears cookies
  GET  /api/v1/auth/csrf-token               -- issues XSRF-TOKEN cookie + JSON copy
  POST /api/v1/auth/check-password-strength  -- policy score for UX meters (public)
  GET  /api/v1/auth/me                       -- current principal (requires auth)
  POST /api/v1/auth/change-password          -- requires auth + CSRF
  POST /api/v1/auth/set-password             -- requires auth + CSRF
  POST /api/v1/auth/users/{id}/ban           -- toggle ban (admin + CSRF)
  POST /api/v1/auth/users/{id}/role          -- change role (admin + CSRF)
  GET  /api/v1/auth/security-stats           -- session / lockout counters (admin)

Security:
  [H2] POST /login and /register are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Timing equalization lives in SecurityCoordinator.login() -- never
       inline a user lookup + verify_password() here.
  [M5] Cache-Control: no-store on every response that carries tokens.

Handlers are thin: each calls one coordinator method and lets SecurityError
propagate to the handler in api/main.py.

Dependency order matters on CSRF-protected routes: the principal is resolved
first (401 for anonymous callers), then require_csrf keys on that principal.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    BanResponse,
    ChangePasswordRequest,
    CSRFTokenResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RoleChangeRequest,
    RoleChangeResponse,
    SetPasswordRequest,
    UserInfo,
)
from auth.coordinator import SecurityCoordinator
from auth.dependencies import (
    csrf_principal_key,
    extract_access_token,
    get_coordinator,
    get_current_principal,
    request_meta,
    require_admin,
    require_csrf,
)
from auth.models import IssuedSession, User
from auth.tokens import (
    REFRESH_COOKIE,
    clear_session_cookies,
    set_access_cookie,
    set_csrf_cookie,
    set_session_cookies,
)

# Auth policy:
# - POST /auth/login, /auth/register:     public, rate-limited
# - POST /auth/refresh, /auth/logout:     public (token-bearing)
# - GET  /auth/csrf-token:                public (keys on principal when authenticated, else IP)
# - POST /auth/check-password-strength:   public
# - GET  /auth/me:                        requires auth
# - POST /auth/change-password:           requires auth + CSRF
# - POST /auth/set-password:              requires auth + CSRF
# - POST /auth/users/{id}/ban:            requires admin + CSRF
# - POST /auth/users/{id}/role:           requires admin + CSRF
# - GET  /auth/security-stats:            requires admin
router = APIRouter()


def _session_response(status_code: int, message: str, user: User, issued: IssuedSession) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            message=message,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            user=UserInfo.from_user(user),
        ).model_dump(by_alias=True),
    )
    set_session_cookies(resp, issued.access_token, issued.refresh_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set access and refresh cookies.

    Lockout (403, locked=true) and bad credentials (401, remainingAttempts)
    come back as SecurityError envelopes from the coordinator.
    """
    coordinator: SecurityCoordinator = get_coordinator(request)
    user, issued = coordinator.login(
        body.email,
        body.password,
        role=body.role.value if body.role else None,
        meta=request_meta(request),
    )
    return _session_response(200, "Login successful.", user, issued)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a student or employer account and log it in."""
    coordinator: SecurityCoordinator = get_coordinator(request)
    user, issued = coordinator.register(body.email, body.password, body.role.value, meta=request_meta(request))
    return _session_response(201, "User registered successfully.", user, issued)


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Mint a new access token from a refresh token bound to a live session."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise HTTPException(
            status_code=400,
            detail={"error": "Refresh token required.", "code": "missing_refresh_token"},
        )
    result = get_coordinator(request).refresh(token, request_meta(request))
    resp = JSONResponse(
        content=RefreshResponse(access_token=result.access_token, user=result.principal).model_dump(by_alias=True),
    )
    set_access_cookie(resp, result.access_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Destroy the caller's session (if any) and clear both cookies.

    The session is found from the access token even after it has expired,
    or from the bound refresh token (body or cookie). Always 200.
    """
    get_coordinator(request).logout_tokens(
        access_token=extract_access_token(request),
        refresh_token=(body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE),
    )
    resp = JSONResponse(content={"message": "Logged out successfully."})
    clear_session_cookies(resp)
    return resp


@router.get("/auth/csrf-token", response_model=CSRFTokenResponse)
def csrf_token(request: Request) -> JSONResponse:
    """Issue a fresh CSRF token for the caller, replacing any previous one."""
    coordinator: SecurityCoordinator = get_coordinator(request)
    ttl = coordinator.csrf.ttl_seconds
    token = coordinator.issue_csrf(csrf_principal_key(request))
    resp = JSONResponse(content=CSRFTokenResponse(csrf_token=token, expires_in=ttl * 1000).model_dump(by_alias=True))
    set_csrf_cookie(resp, token, max_age=ttl)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/check-password-strength", response_model=PasswordStrengthResponse)
def check_password_strength(request: Request, body: PasswordStrengthRequest) -> PasswordStrengthResponse:
    result = get_coordinator(request).check_password_strength(body.password)
    return PasswordStrengthResponse.from_score(result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(current_user: User = Depends(get_current_principal)) -> dict:
    return {"user": UserInfo.from_user(current_user).model_dump(by_alias=True)}


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_principal),
    _csrf: None = Depends(require_csrf),
) -> MessageResponse:
    """Verify the current password, then apply policy and reuse checks before committing."""
    get_coordinator(request).change_password(
        current_user.id,
        body.old_password,
        body.password,
        meta=request_meta(request),
    )
    return MessageResponse(message="Password changed successfully.")


@router.post("/auth/set-password", response_model=MessageResponse)
def set_password(
    request: Request,
    body: SetPasswordRequest,
    current_user: User = Depends(get_current_principal),
    _csrf: None = Depends(require_csrf),
) -> MessageResponse:
    """Set a password without the old one (accounts created without a local password)."""
    get_coordinator(request).set_password(current_user.id, body.password, meta=request_meta(request))
    return MessageResponse(message="Password set successfully.")


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.post("/auth/users/{user_id}/ban", response_model=BanResponse)
def toggle_ban(
    request: Request,
    user_id: int,
    admin: User = Depends(require_admin),
    _csrf: None = Depends(require_csrf),
) -> BanResponse:
    """Ban or unban a user. Banning destroys every session the user holds."""
    target = get_coordinator(request).toggle_ban(user_id, admin, meta=request_meta(request))
    verb = "banned" if target.is_banned else "unbanned"
    return BanResponse(
        message=f"User {target.email} has been {verb}.",
        user={"id": target.id, "email": target.email, "isBanned": target.is_banned},
    )


@router.post("/auth/users/{user_id}/role", response_model=RoleChangeResponse)
def change_role(
    request: Request,
    user_id: int,
    body: RoleChangeRequest,
    admin: User = Depends(require_admin),
    _csrf: None = Depends(require_csrf),
) -> RoleChangeResponse:
    """Change a user's role. Live sessions pick it up at their next refresh."""
    target = get_coordinator(request).change_role(user_id, body.role.value, admin, meta=request_meta(request))
    return RoleChangeResponse(message="User role updated successfully.", user=UserInfo.from_user(target))


@router.get("/auth/security-stats")
def security_stats(request: Request, admin: User = Depends(require_admin)) -> dict:
    return get_coordinator(request).security_stats()
