from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from csaccess.logging import get_logger

logger = get_logger(__name__)

# Only ever used outside production; see Settings._resolve_jwt_secret.
DEV_JWT_SECRET = "csaccess-dev-secret-change-in-production"


class Environment(str, Enum):
    """Deployment environments recognised by the backend."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, built once at startup and passed to the services."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/csaccess", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for the memory store's JSON snapshot; unset keeps state in-process only",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("csaccess", "JWT_ISSUER")
    jwt_audience: str = env_field("csaccess-clients", "JWT_AUDIENCE")
    session_ttl_days: int = env_field(
        7, "SESSION_TTL_DAYS", ge=1, description="Lifetime of issued bearer tokens"
    )
    token_clock_skew_seconds: int = env_field(
        0,
        "TOKEN_CLOCK_SKEW_SECONDS",
        ge=0,
        description="Grace period applied when checking token expiry",
    )
    enforce_session_revocation: bool = env_field(
        True,
        "ENFORCE_SESSION_REVOCATION",
        description="Reject tokens whose session record was revoked (one store read per request)",
    )
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", ge=8, description="argon2 memory cost in KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    auth_rate_limit: int = env_field(
        10, "AUTH_RATE_LIMIT", description="Register/login attempts per client per window"
    )
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _resolve_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if self.is_production:
            raise ValueError("JWT_SECRET must be set when ENVIRONMENT=production")
        logger.warning(
            "jwt_secret_default_in_use",
            environment=self.environment.value,
            message="JWT_SECRET not set; using the development default",
        )
        self.jwt_secret = DEV_JWT_SECRET
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
