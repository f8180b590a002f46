from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_MIN_SECRET_LENGTH = 32


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits runtime resets.",
    )
    expose_internal_errors: bool = env_field(
        False,
        "EXPOSE_INTERNAL_ERRORS",
        description="Include sanitized internal error text in 500 responses",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    token_clock_skew_seconds: int = env_field(
        30,
        "TOKEN_CLOCK_SKEW_SECONDS",
        description="Tolerance for an iat slightly in the future from a node with a fast clock; never applied to exp",
        ge=0,
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES", gt=0)
    session_touch_interval_seconds: int = env_field(
        60,
        "SESSION_TOUCH_INTERVAL_SECONDS",
        description="Minimum gap between last-activity writes for one session",
        ge=0,
    )
    single_active_session: bool = env_field(
        False,
        "SINGLE_ACTIVE_SESSION",
        description="Evict a user's older sessions whenever a new one is created",
    )

    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS", gt=0)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", gt=0)
    login_failure_window_minutes: int = env_field(
        30, "LOGIN_FAILURE_WINDOW_MINUTES", gt=0
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)

    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    read_retry_attempts: int = env_field(3, "READ_RETRY_ATTEMPTS", ge=1)
    read_retry_backoff_ms: int = env_field(50, "READ_RETRY_BACKOFF_MS", ge=0)
    session_reaper_interval_seconds: int = env_field(
        600, "SESSION_REAPER_INTERVAL_SECONDS", gt=0
    )

    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] | None = env_field(None, "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_disabled(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Tokens signed with a generated secret do not survive a restart and are
        # not accepted by other instances.
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; generated an ephemeral signing secret",
        )
        return secrets.token_urlsafe(64)


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
