"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and CSRF.

Access token lookup order:
  1. "access_token" cookie -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients.

try_get_auth_context() is the soft variant (returns None on any failure).
get_auth_context() raises the coordinator's SecurityError, which the
exception handler in api/main.py turns into the {error, code, ...} envelope.
The resolved context is cached on request.state so a route that depends on
both require_csrf and get_current_principal verifies and touches the session
once.

require_csrf() keys the CSRF check on the authenticated principal id when
there is one, otherwise on the client IP (same key GET /auth/csrf-token used).

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.coordinator import SecurityCoordinator
from auth.errors import AuthenticationFailure, Forbidden, SecurityError
from auth.models import AuthContext, RequestMeta, User
from auth.tokens import ACCESS_COOKIE

ADMIN_ROLES = frozenset({"admin", "registrar"})

CSRF_HEADERS = ("X-CSRF-Token", "X-XSRF-Token")
CSRF_BODY_FIELD = "_csrf"

_UNSET = object()


def get_coordinator(request: Request) -> SecurityCoordinator:
    return request.app.state.security


def request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def extract_access_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_auth_context(request: Request) -> AuthContext:
    """Require a valid access token bound to a live session."""
    cached = getattr(request.state, "auth_context", _UNSET)
    if isinstance(cached, AuthContext):
        return cached
    token = extract_access_token(request)
    if not token:
        raise AuthenticationFailure("No authentication token provided.")
    ctx = get_coordinator(request).authenticate(token, request_meta(request))
    request.state.auth_context = ctx
    return ctx


def try_get_auth_context(request: Request) -> AuthContext | None:
    """Return the AuthContext, or None if the request is not authenticated.

    Never raises -- callers that need a hard 401 should use get_auth_context().
    """
    cached = getattr(request.state, "auth_context", _UNSET)
    if cached is not _UNSET:
        return cached
    try:
        return get_auth_context(request)
    except SecurityError:
        request.state.auth_context = None
        return None


def get_current_principal(ctx: AuthContext = Depends(get_auth_context)) -> User:
    """Use as a FastAPI dependency:

    @router.get("/protected")
    def route(user: User = Depends(get_current_principal)): ...
    """
    return ctx.user


def require_admin(ctx: AuthContext = Depends(get_auth_context)) -> User:
    """Require an administrative role (admin or registrar)."""
    if ctx.user.role not in ADMIN_ROLES:
        raise Forbidden("Administrative access required.", context={"userRole": ctx.user.role})
    return ctx.user


def csrf_principal_key(request: Request) -> str:
    ctx = try_get_auth_context(request)
    if ctx is not None:
        return str(ctx.user.id)
    return request.client.host if request.client else "unknown"


async def _body_csrf_token(request: Request) -> str | None:
    """The "_csrf" field of a JSON body, for clients that cannot set headers."""
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        data = await request.json()
    except ValueError:
        return None
    value = data.get(CSRF_BODY_FIELD) if isinstance(data, dict) else None
    return value if isinstance(value, str) else None


async def require_csrf(request: Request) -> None:
    """Reject state-changing requests without a matching X-CSRF-Token header (or "_csrf" body field)."""
    presented = None
    for header in CSRF_HEADERS:
        presented = request.headers.get(header)
        if presented:
            break
    if not presented:
        presented = await _body_csrf_token(request)
    get_coordinator(request).verify_csrf(
        csrf_principal_key(request),
        presented,
        request.method,
        request_meta(request),
    )
