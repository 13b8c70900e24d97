from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-level settings read once from the environment and `.env`.

    Thresholds that operators tune at runtime (rate limits, lockout, session
    lifetime, password policy) are not here; they live in the runtime config
    registry so they can change between requests.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for the test suite; enables in-process fallbacks.",
    )
    secret_key: str = env_field(
        "dev-secret-key-change-me",
        "SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest",
    )
    app_name: str = env_field("Gatehouse", "APP_NAME", description="TOTP issuer name")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")
    # HTTP boundary
    session_cookie_name: str = env_field("session", "SESSION_COOKIE_NAME")
    pending_2fa_cookie_name: str = env_field("2fa_pending", "PENDING_2FA_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")
    dev_verbose_errors: bool = env_field(
        False,
        "DEV_VERBOSE_ERRORS",
        description="Include sanitized exception detail in 500 responses; never enable in production",
    )
    # Password hashing cost, fixed per deployment
    argon2_memory_cost: int = env_field(19456, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(2, "ARGON2_TIME_COST")
    argon2_hash_len: int = env_field(32, "ARGON2_HASH_LEN")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")

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

    @field_validator("argon2_memory_cost", "argon2_time_cost", "argon2_hash_len", "argon2_parallelism")
    @classmethod
    def _positive_cost(cls, value: int) -> int:
        if value < 1:
            raise ValueError("argon2 cost parameters must be positive")
        return value

    @field_validator("secret_key")
    @classmethod
    def _warn_default_secret(cls, value: str) -> str:
        if not value:
            raise ValueError("SECRET_KEY must not be empty")
        if value == "dev-secret-key-change-me":
            logger.warning("secret_key_default_in_use")
        return value

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
