"""
API request and response models for CertGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

The public JSON contract is camelCase (accessToken, oldPassword,
remainingAttempts), so every model uses an alias generator and accepts both
spellings on input (populate_by_name=True). Responses are dumped with
by_alias=True.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import PasswordScore, User

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    registrar = "registrar"
    student = "student"
    employer = "employer"


class SelfServiceRole(str, Enum):
    student = "student"
    employer = "employer"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    email may be omitted; the lockout then keys on the client IP.
    """

    model_config = _CAMEL

    email: Optional[str] = Field(default=None, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    role: Optional[RoleEnum] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else None


class RegisterRequest(BaseModel):
    model_config = _CAMEL

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=1, max_length=128)
    role: SelfServiceRole = SelfServiceRole.student


class RefreshRequest(BaseModel):
    """refreshToken may also come from the refresh_token cookie."""

    model_config = _CAMEL

    refresh_token: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    model_config = _CAMEL

    old_password: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=128)


class SetPasswordRequest(BaseModel):
    model_config = _CAMEL

    password: str = Field(min_length=1, max_length=128)


class PasswordStrengthRequest(BaseModel):
    model_config = _CAMEL

    password: str = Field(min_length=1, max_length=128)


class RoleChangeRequest(BaseModel):
    role: RoleEnum


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    email: str
    role: str
    requires_password_set: bool = False
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            requires_password_set=user.requires_password_set,
            last_login=user.last_login,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str = "Login successful."
    access_token: str
    refresh_token: str
    user: UserInfo


class RefreshResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str = "Token refreshed successfully."
    access_token: str
    user: dict


class CSRFTokenResponse(BaseModel):
    """expiresIn is in milliseconds, matching the cookie max-age the frontend schedules against."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    csrf_token: str
    expires_in: int


class PasswordStrengthResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    score: int
    level: str
    valid: bool
    errors: list[str]

    @classmethod
    def from_score(cls, result: PasswordScore) -> "PasswordStrengthResponse":
        return cls(score=result.score, level=result.level, valid=result.valid, errors=result.errors)


class MessageResponse(BaseModel):
    message: str


class BanResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    user: dict


class RoleChangeResponse(BaseModel):
    message: str
    user: UserInfo


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
