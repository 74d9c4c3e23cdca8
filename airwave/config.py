from __future__ import annotations

import os
import re
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from airwave.logging import get_logger

logger = get_logger(__name__)

DEV_ACCESS_SECRET = "development_access_secret_do_not_use_in_production"
DEV_REFRESH_SECRET = "development_refresh_secret_do_not_use_in_production"

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 60 * 60 * 24}

DEFAULT_CSRF_EXEMPT_PATHS = [
    "/v1/auth/login",
    "/v1/auth/register",
    "/v1/auth/refresh",
    "/v1/auth/logout",
]


def parse_duration(value: str | int) -> int:
    """Convert ``15m``/``7d`` style durations (or bare seconds) to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"duration must be positive: {value}")
        return value
    raw = str(value).strip().lower()
    if raw.isdigit():
        return parse_duration(int(raw))
    match = _DURATION_PATTERN.match(raw)
    if not match:
        raise ValueError(
            f"invalid duration {value!r}; expected <number><s|m|h|d>, e.g. 15m or 7d"
        )
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return amount * _DURATION_UNITS[match.group(2)]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth, token and permission services."""

    environment: str = env_field("development", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/airwave", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    kv_operation_timeout: float = env_field(
        5.0,
        "KV_OPERATION_TIMEOUT",
        description="Upper bound in seconds for any single key-value store command",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    # Token signing
    jwt_access_secret: Optional[str] = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: Optional[str] = env_field(None, "JWT_REFRESH_SECRET")
    access_token_expiry: str = env_field("15m", "ACCESS_TOKEN_EXPIRY")
    refresh_token_expiry: str = env_field("7d", "REFRESH_TOKEN_EXPIRY")
    token_issuer: str = env_field("airwave-api", "TOKEN_ISSUER")
    token_audience: str = env_field("airwave-client", "TOKEN_AUDIENCE")
    refresh_token_rotation: bool = env_field(
        False,
        "REFRESH_TOKEN_ROTATION",
        description="Issue a new refresh token on every refresh and revoke the presented one",
    )
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER", ge=1)
    # Permissions
    permission_cache_ttl_seconds: int = env_field(
        15 * 60, "PERMISSION_CACHE_TTL_SECONDS", ge=0
    )
    # HTTP surface
    access_token_cookie: str = env_field("access_token", "ACCESS_TOKEN_COOKIE")
    csrf_exempt_paths: List[str] = env_field(
        DEFAULT_CSRF_EXEMPT_PATHS, "CSRF_EXEMPT_PATHS"
    )
    cors_allow_origins: List[str] = env_field(
        [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ],
        "CORS_ALLOW_ORIGINS",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

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

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_duration(self.access_token_expiry)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_duration(self.refresh_token_expiry)

    @field_validator("csrf_exempt_paths", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("access_token_expiry", "refresh_token_expiry")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _blank_secret_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        if self.is_production:
            missing = [
                env
                for env, value in (
                    ("JWT_ACCESS_SECRET", self.jwt_access_secret),
                    ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} must be set in production"
                )
            if self.jwt_access_secret == self.jwt_refresh_secret:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ"
                )
            return self
        if not self.jwt_access_secret:
            logger.warning("jwt_access_secret_default", environment=self.environment)
            self.jwt_access_secret = DEV_ACCESS_SECRET
        if not self.jwt_refresh_secret:
            logger.warning("jwt_refresh_secret_default", environment=self.environment)
            self.jwt_refresh_secret = DEV_REFRESH_SECRET
        return self


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
