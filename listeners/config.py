from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from listeners.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_duration(value: str | int) -> int:
    """Convert a duration such as ``"15m"``, ``"7d"`` or ``3600`` into seconds."""

    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"duration must be positive: {value}")
        return value
    match = _DURATION_PATTERN.match(str(value).lower())
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    seconds = int(amount) * _DURATION_UNITS[unit]
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return seconds


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-process test doubles",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_operation_timeout_seconds: float = env_field(
        3.0,
        "STORE_OPERATION_TIMEOUT_SECONDS",
        description="Upper bound for a single key-value store command",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Signing secret for refresh tokens; falls back to JWT_SECRET",
    )
    access_token_ttl: str = env_field("15m", "ACCESS_TOKEN_TTL")
    remember_me_access_token_ttl: str = env_field("30d", "REMEMBER_ME_ACCESS_TOKEN_TTL")
    refresh_token_ttl: str = env_field("7d", "REFRESH_TOKEN_TTL")
    remember_me_refresh_token_ttl: str = env_field(
        "30d", "REMEMBER_ME_REFRESH_TOKEN_TTL"
    )
    health_check_path: str = env_field("/api/health", "HEALTH_CHECK_PATH")
    cache_cleanup_interval_seconds: int = env_field(
        60 * 60,
        "CACHE_CLEANUP_INTERVAL_SECONDS",
        description="Interval of the orphaned-key sweep; 0 disables it",
    )
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    account_lock_minutes: int = env_field(120, "ACCOUNT_LOCK_MINUTES")
    password_reset_ttl_seconds: int = env_field(60 * 60, "PASSWORD_RESET_TTL_SECONDS")
    audio_base_url: str = env_field("http://localhost:9000/audio", "AUDIO_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator(
        "access_token_ttl",
        "remember_me_access_token_ttl",
        "refresh_token_ttl",
        "remember_me_refresh_token_ttl",
    )
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("store_operation_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store_operation_timeout_seconds must be positive")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def refresh_secret(self) -> str | None:
        return self.jwt_refresh_secret or self.jwt_secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
