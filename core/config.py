"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CertGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. max_login_attempts -> MAX_LOGIN_ATTEMPTS).

  @field_validator: JWT_EXPIRE / JWT_REFRESH_EXPIRE accept the duration strings
      operators already use for token lifetimes ("15m", "30d", "12h", "90s")
      and are normalized to integer seconds.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates signing keys with a warning, production
      mode refuses to start without them.

Security notes:
  [M6] Signing keys shorter than 32 chars are rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       REFRESH_SECRET_KEY is a hard startup failure.

  Access and refresh tokens are signed with different keys so a leaked access
  token signature can never be replayed against POST /auth/refresh.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import re
import secrets
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("certguard.config")

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str | int) -> int:
    """Convert "15m" / "30d" / "12h" / "90s" / "900" into seconds.

    Raises ValueError for anything else, including zero or negative values.
    """
    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_RE.match(str(value))
        if match is None:
            raise ValueError(f"Invalid duration {value!r}. Expected e.g. '15m', '30d', '3600'.")
        seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()]
    if seconds <= 0:
        raise ValueError("Duration must be positive.")
    return seconds


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    refresh_secret_key: str = ""
    database_url: str = ""

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    jwt_expire: int = 15 * 60
    jwt_refresh_expire: int = 30 * 24 * 3600
    session_timeout_minutes: int = 30

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    max_login_attempts: int = 5
    account_lockout_duration_minutes: int = 15

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = 8
    require_strong_password: bool = True

    # ------------------------------------------------------------------
    # CSRF
    # ------------------------------------------------------------------

    enable_csrf_protection: bool = True

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # JSON list in the environment, e.g. ALLOWED_HOSTS='["certs.example.edu"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Background sweeps (seconds)
    # ------------------------------------------------------------------

    session_sweep_interval: int = 5 * 60
    csrf_sweep_interval: int = 10 * 60
    lockout_sweep_interval: int = 60 * 60

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    # The root admin account can never be banned.
    root_admin_email: str = "root@system"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("jwt_expire", "jwt_refresh_expire", mode="before")
    @classmethod
    def validate_duration(cls, value):
        return parse_duration(value)

    @field_validator(
        "session_timeout_minutes",
        "max_login_attempts",
        "account_lockout_duration_minutes",
        "password_min_length",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def validate_secret_keys(self) -> "Settings":
        """Enforce the signing key policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate random keys with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        for name in ("secret_key", "refresh_secret_key"):
            value = getattr(self, name)
            if not value:
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                        name.upper(),
                    )
                    continue
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            if len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        return self

    @property
    def session_timeout_seconds(self) -> int:
        return self.session_timeout_minutes * 60

    @property
    def lockout_duration_seconds(self) -> int:
        return self.account_lockout_duration_minutes * 60


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
