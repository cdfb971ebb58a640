"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the network-level throttle the lockout tracker relies on: the
tracker keys on email, so one IP cycling through many emails is only slowed
down here.

RATE_LIMIT_ENABLED=false turns every limit into a no-op (test suites hammer
/auth/login far faster than any real client).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", enabled=_settings.rate_limit_enabled)


def login_rate_limit() -> str:
    return _settings.login_rate_limit
