from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ticketdesk.logging import get_logger

logger = get_logger(__name__)

# Endpoint classes that carry their own request budget
RATE_LIMIT_CLASSES = ("global", "auth", "login", "public_ticket")

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and session core."""

    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("ticketdesk", "JWT_ISSUER")
    jwt_audience: str = env_field("ticketdesk-portals", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime when remember-me is not requested",
    )
    remember_me_refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REMEMBER_ME_REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime when remember-me is requested",
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")
    max_sessions_per_account: int = env_field(5, "MAX_SESSIONS_PER_ACCOUNT")

    global_rate_limit_max: int = env_field(150, "GLOBAL_RATE_LIMIT_MAX")
    global_rate_limit_window_seconds: int = env_field(15 * 60, "GLOBAL_RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit_max: int = env_field(100, "AUTH_RATE_LIMIT_MAX")
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit_max: int = env_field(50, "LOGIN_RATE_LIMIT_MAX")
    login_rate_limit_window_seconds: int = env_field(5 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    public_ticket_rate_limit_max: int = env_field(50, "PUBLIC_TICKET_RATE_LIMIT_MAX")
    public_ticket_rate_limit_window_seconds: int = env_field(
        60 * 60, "PUBLIC_TICKET_RATE_LIMIT_WINDOW_SECONDS"
    )

    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows running without Redis",
    )
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="Optional JSON snapshot file for the in-memory account store",
    )
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "remember_me_refresh_token_ttl_minutes",
        "max_sessions_per_account",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _require_signing_secrets(self) -> "Settings":
        # Signing configuration is checked once at startup, never per request
        access = self.access_token_secret
        refresh = self.refresh_token_secret
        if not access or not refresh:
            raise ValueError(
                "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must both be set"
            )
        if access == refresh:
            raise ValueError("access and refresh tokens must be signed with distinct secrets")
        if len(access) < _MIN_SECRET_LENGTH or len(refresh) < _MIN_SECRET_LENGTH:
            logger.warning(
                "signing_secret_short",
                min_length=_MIN_SECRET_LENGTH,
                message="Use at least 32 random characters for token signing secrets",
            )
        return self

    def rate_limit_policy(self, endpoint_class: str) -> tuple[int, int]:
        """Return ``(max_requests, window_seconds)`` for an endpoint class."""
        if endpoint_class not in RATE_LIMIT_CLASSES:
            raise KeyError(f"unknown rate limit class: {endpoint_class}")
        return (
            getattr(self, f"{endpoint_class}_rate_limit_max"),
            getattr(self, f"{endpoint_class}_rate_limit_window_seconds"),
        )


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
