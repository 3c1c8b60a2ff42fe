from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the sign-in and bootstrap service."""

    # Deployment mode: empty disables public (anonymous) access entirely
    public_domain: str = env_field(
        "",
        "PUBLIC_DOMAIN",
        description="Host name that serves anonymous visitors; empty means every host is gated",
    )
    # Identity provider
    idp_endpoint: str = env_field("http://localhost:8000", "IDP_ENDPOINT")
    idp_client_id: str = env_field("", "IDP_CLIENT_ID")
    idp_client_secret: str = env_field("", "IDP_CLIENT_SECRET")
    idp_organization: str = env_field("built-in", "IDP_ORGANIZATION")
    idp_application: str = env_field("app-built-in", "IDP_APPLICATION")
    idp_expected_state: str | None = env_field(
        None,
        "IDP_EXPECTED_STATE",
        description="If set, the sign-in state parameter must equal this value",
    )
    idp_jwt_public_key: str | None = env_field(
        None, "IDP_JWT_PUBLIC_KEY", description="PEM encoded token verification key"
    )
    idp_jwt_public_key_path: str | None = env_field(
        "token_jwt_key.pem",
        "IDP_JWT_PUBLIC_KEY_PATH",
        description="Path to the PEM verification key, used when IDP_JWT_PUBLIC_KEY is unset",
    )
    idp_timeout_seconds: float = env_field(10.0, "IDP_TIMEOUT_SECONDS")
    # Tenant that owns conversations, messages and stores
    default_owner: str = env_field("admin", "DEFAULT_OWNER")
    default_store_name: str = env_field("store-built-in", "DEFAULT_STORE_NAME")
    anonymous_avatar_url: str = env_field(
        "https://cdn.casdoor.com/casdoor/resource/built-in/admin/casibase-user.png",
        "ANONYMOUS_AVATAR_URL",
    )
    # Sessions
    session_ttl_minutes: int = env_field(60 * 24 * 7, "SESSION_TTL_MINUTES")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    bootstrap_lock_ttl_seconds: int = env_field(10, "BOOTSTRAP_LOCK_TTL_SECONDS")
    bootstrap_lock_wait_seconds: float = env_field(2.0, "BOOTSTRAP_LOCK_WAIT_SECONDS")
    # Backing services
    database_url: str = env_field("postgresql://localhost:5432/chatgate", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/chatgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks",
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

    @field_validator("public_domain")
    @classmethod
    def _normalize_public_domain(cls, value: str | None) -> str:
        return (value or "").strip().lower()

    @field_validator("idp_endpoint")
    @classmethod
    def _strip_endpoint(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def public_mode_enabled(self) -> bool:
        return bool(self.public_domain)


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
