from __future__ import annotations

import re
import unicodedata
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_EMAIL_LOCAL_PART = re.compile(r"^[a-z0-9!#$%&'*+/=?^_`{|}~.-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
_USERNAME = re.compile(r"^[A-Za-z0-9_]{3,20}$")
_PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a number"),
    (re.compile(r"[@$!%*?&]"), "a special character (@$!%*?&)"),
)


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email address")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("Please provide a valid email address")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    missing = [label for pattern, label in _PASSWORD_CLASSES if not pattern.search(value)]
    if missing:
        raise ValueError("password must contain " + ", ".join(missing))
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    username: str
    email: str
    password: str
    confirm_password: Optional[str] = Field(default=None, alias="confirmPassword")

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = value.strip()
        if not _USERNAME.match(value):
            raise ValueError(
                "Username must be 3-20 characters and contain only letters, numbers, and underscores"
            )
        return value

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self


class LoginRequest(_CamelModel):
    email_or_username: str = Field(..., min_length=1, max_length=254, alias="emailOrUsername")
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = Field(default=False, alias="rememberMe")


class RefreshTokenRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096, alias="refreshToken")


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096, alias="refreshToken")


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str
    confirm_password: Optional[str] = Field(default=None, alias="confirmPassword")

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self


class SongCreateRequest(_CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    artist: str = Field(..., min_length=1, max_length=200)
    album: Optional[str] = Field(default=None, max_length=200)
    genre: Optional[str] = Field(default=None, max_length=50)
    duration_ms: int = Field(default=0, ge=0, alias="durationMs")


class CacheInvalidateRequest(BaseModel):
    pattern: str = Field(..., min_length=1, max_length=256)

    @field_validator("pattern")
    @classmethod
    def _reject_match_all(cls, value: str) -> str:
        if value.strip() in {"*", ""}:
            raise ValueError("pattern must be scoped to a namespace")
        return value.strip()


class RateLimitResetRequest(_CamelModel):
    route_class: str = Field(..., alias="routeClass")
    bucket: str = Field(..., min_length=1, max_length=256)
