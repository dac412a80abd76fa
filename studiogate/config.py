from __future__ import annotations

import ipaddress
import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class AppEnv(str, Enum):
    """Deployment environments; cookies are only marked secure in production."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the studio authentication service."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Durable store
    database_url: str = env_field(
        "postgresql://localhost:5432/studiogate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(None, "SHARED_FS_ROOT")
    owner_email: str | None = env_field(
        None, "OWNER_EMAIL", description="Seeds the owner account when the store is empty"
    )

    # Fast session cache
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False, "TEST_MODE", description="Permits in-process cache fallback and runtime resets"
    )

    # Sessions and transport
    session_cookie_name: str = env_field("session", "SESSION_COOKIE_NAME")
    session_cookie_secret: str | None = env_field(
        None,
        "SESSION_COOKIE_SECRET",
        description="Fernet key; when set the session cookie payload is encrypted",
    )
    session_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_TTL_SECONDS")

    # One-time passcodes
    otp_expiry_minutes: int = env_field(5, "OTP_EXPIRY_MINUTES")
    otp_rate_limit: int = env_field(5, "OTP_RATE_LIMIT")
    otp_rate_window_seconds: int = env_field(5 * 60, "OTP_RATE_WINDOW_SECONDS")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Studio", "EMAIL_FROM_NAME")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trusted_proxies: List[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Addresses or CIDR ranges whose X-Forwarded-For / X-Real-IP headers are honored",
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

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            return AppEnv(value.strip().lower())
        return AppEnv(value)

    @field_validator("redis_url", "session_cookie_secret", "owner_email", "shared_fs_root", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("trusted_proxies")
    @classmethod
    def _validate_proxies(cls, value: List[str]) -> List[str]:
        for entry in value:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as exc:
                raise ValueError(f"invalid trusted proxy {entry!r}") from exc
        return value

    @field_validator("session_ttl_seconds", "otp_expiry_minutes", "otp_rate_window_seconds")
    @classmethod
    def _positive_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
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
