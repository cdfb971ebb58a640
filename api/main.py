"""
api/main.py -- FastAPI application entry point for CertGuard.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- credentialed CORS; allows the CSRF headers through
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the user store and the SecurityCoordinator (which owns the
session, lockout, CSRF, and policy stores) and starts three sweep tasks:
  sessions every 5 minutes, CSRF tokens every 10, lockout / IP records every 60.
Each sweep takes the same lock as the foreground operations on its store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.coordinator import build_coordinator
from auth.errors import SecurityError
from auth.events import SecurityEventType
from auth.store import UserStore
from core.config import get_settings

__version__ = "0.3.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("certguard.api")

# ---------------------------------------------------------------------------
# Background sweeps
# ---------------------------------------------------------------------------


async def _sweep_loop(name: str, interval: int, sweep: Callable[[], int]) -> None:
    """Call sweep() every `interval` seconds until cancelled.

    A failing sweep is logged and the loop keeps going; the stores stay
    usable and the next pass retries. CancelledError from task.cancel()
    propagates out of asyncio.sleep during shutdown.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = sweep()
        except Exception:
            logger.exception("%s sweep failed", name)
            continue
        if removed:
            logger.debug("%s sweep removed %d record(s)", name, removed)


def _lockout_sweep(app: FastAPI) -> Callable[[], int]:
    def sweep() -> int:
        security = app.state.security
        removed = security.lockout.sweep()
        if security.ip_activity is not None:
            removed += security.ip_activity.sweep()
        return removed

    return sweep


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores on startup; cancel sweeps and close the DB on shutdown.

    Startup order matters: the coordinator needs the user store, and the
    sweep tasks reference app.state.security.
    """
    logger.info("CertGuard API starting up")
    app.state.user_store = UserStore(_settings.database_url) if _settings.database_url else UserStore()
    app.state.security = build_coordinator(_settings, app.state.user_store)
    logger.info(
        "Security stores initialized (session_timeout=%dm, max_attempts=%d, csrf=%s, strong_passwords=%s)",
        _settings.session_timeout_minutes,
        _settings.max_login_attempts,
        _settings.enable_csrf_protection,
        _settings.require_strong_password,
    )
    security = app.state.security
    app.state.sweep_tasks = [
        asyncio.create_task(_sweep_loop("session", _settings.session_sweep_interval, security.sessions.sweep)),
        asyncio.create_task(_sweep_loop("csrf", _settings.csrf_sweep_interval, security.csrf.sweep)),
        asyncio.create_task(_sweep_loop("lockout", _settings.lockout_sweep_interval, _lockout_sweep(app))),
    ]

    yield

    for task in app.state.sweep_tasks:
        task.cancel()
    app.state.user_store.close()
    logger.info("CertGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CertGuard API",
    description="Session, lockout, CSRF, and password-policy gateway for the credential platform.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-XSRF-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging / IP activity middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def track_ip_activity(request: Request, call_next):
    """Feed every request into the IP activity tracker (suspicious-rate detection)."""
    security = getattr(request.app.state, "security", None)
    if security is not None and security.ip_activity is not None and request.client:
        security.ip_activity.track(request.client.host, request.url.path)
    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body has the same flat shape: {"error": <message>, "code": <code>, ...context}
# ---------------------------------------------------------------------------


@app.exception_handler(SecurityError)
async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    """Render coordinator failures. Token-bearing flows must never be cached [M5]."""
    logger.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.error_code)
    response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After and record a RATE_LIMIT_EXCEEDED security event."""
    security = getattr(request.app.state, "security", None)
    if security is not None:
        security.events.emit(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            {"path": request.url.path, "limit": str(exc.detail)},
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content={"error": "Too many requests.", "code": "rate_limited", "detail": str(exc.detail)},
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": "Request validation failed.",
            "code": "validation_error",
            "detail": str(exc.errors()),
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured detail dicts are returned as-is; plain strings are wrapped."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": f"http_{exc.status_code}"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "An unexpected error occurred.", "code": "internal_error"},
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a database round-trip check."""
    components = {"app": "ok"}
    try:
        request.app.state.user_store.has_users()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check database query failed")
        components["database"] = "error"
    return HealthResponse(version=__version__, components=components)
