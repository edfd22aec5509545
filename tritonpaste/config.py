from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, read once at start-up."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tritonpaste", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Holds OAuth anti-forgery states; in-process dict when unset",
    )
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    oauth_timeout_seconds: float = env_field(30.0, "OAUTH_TIMEOUT_SECONDS")
    frontend_callback_url: str = env_field(
        "http://localhost:3000/auth/callback",
        "FRONTEND_CALLBACK_URL",
        description="Where the OAuth callback redirects with ?token=<plaintext>",
    )
    cors_allow_origins: list[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8080, "PORT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and in-process fallbacks for the test suite.",
    )

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

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("oauth_state_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl must be positive")
        return value


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
