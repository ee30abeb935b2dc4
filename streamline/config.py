from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from streamline.logging import get_logger

logger = get_logger(__name__)


class TenancyMode(str, Enum):
    """Deployment tenancy shapes.

    - SINGLE: one teamspace (slug ``workspace``) shared by every account
    - MULTI: every registration provisions its own teamspace and project
    """

    SINGLE = "single-tenant"
    MULTI = "multi-tenant"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration resolved from the environment and ``.env``."""

    tenancy_mode: TenancyMode = env_field(TenancyMode.SINGLE, "MODE")
    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/streamline", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only helpers such as runtime resets.",
    )
    data_dir: str = env_field("/data", "DATA_DIR")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    build_sha: str = env_field("dev", "BUILD_SHA")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Client IP resolution: forwarded headers are only honoured behind a known proxy
    trusted_proxy: bool = env_field(False, "TRUSTED_PROXY")

    # Rate limiting
    rate_limit_fail_closed: bool = env_field(
        False,
        "RATE_LIMIT_FAIL_CLOSED",
        description=(
            "When the shared counter store is unreachable, reject requests "
            "(true) instead of degrading to per-process counters (false)."
        ),
    )
    rate_limit_store_retries: int = env_field(2, "RATE_LIMIT_STORE_RETRIES", ge=1, le=5)
    rate_limit_sweep_interval_seconds: int = env_field(
        300, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS", ge=1
    )
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT", ge=1)
    login_rate_window_seconds: int = env_field(60, "LOGIN_RATE_WINDOW_SECONDS", ge=1)
    registration_rate_limit: int = env_field(3, "REGISTRATION_RATE_LIMIT", ge=1)
    registration_rate_window_seconds: int = env_field(
        3600, "REGISTRATION_RATE_WINDOW_SECONDS", ge=1
    )
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT", ge=1)
    password_reset_rate_window_seconds: int = env_field(
        3600, "PASSWORD_RESET_RATE_WINDOW_SECONDS", ge=1
    )
    general_rate_limit: int = env_field(100, "GENERAL_RATE_LIMIT", ge=1)
    general_rate_window_seconds: int = env_field(60, "GENERAL_RATE_WINDOW_SECONDS", ge=1)

    # Sessions
    session_lifetime_days: int = env_field(30, "SESSION_LIFETIME_DAYS", ge=1)
    session_renewal_threshold_days: int = env_field(
        7, "SESSION_RENEWAL_THRESHOLD_DAYS", ge=0
    )

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=8)

    # Tenancy
    single_tenant_member_role: str = env_field("editor", "SINGLE_TENANT_MEMBER_ROLE")
    invitation_ttl_hours: int = env_field(24, "INVITATION_TTL_HOURS", ge=1)
    invitation_max_attempts: int = env_field(3, "INVITATION_MAX_ATTEMPTS", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)

    # Outbound email; unset host means messages are logged instead of sent
    smtp_host: str | None = env_field(
        None, "SMTP_HOST", description="SMTP server hostname"
    )
    smtp_port: int = env_field(587, "SMTP_PORT", description="SMTP server port")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="Use STARTTLS (true) or implicit SSL (false)"
    )
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Streamline Studio", "EMAIL_FROM_NAME")

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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("single_tenant_member_role")
    @classmethod
    def _validate_member_role(cls, value: str) -> str:
        if value not in {"admin", "editor", "viewer"}:
            raise ValueError("SINGLE_TENANT_MEMBER_ROLE must be admin, editor or viewer")
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.password_min_length > self.password_max_length:
            raise ValueError("PASSWORD_MIN_LENGTH cannot exceed PASSWORD_MAX_LENGTH")
        if self.session_renewal_threshold_days >= self.session_lifetime_days:
            raise ValueError(
                "SESSION_RENEWAL_THRESHOLD_DAYS must be shorter than SESSION_LIFETIME_DAYS"
            )
        if (
            self.environment == Environment.PRODUCTION
            and self.use_memory_store
            and not self.test_mode
        ):
            raise ValueError("USE_MEMORY_STORE is not allowed in production")
        if self.environment == Environment.PRODUCTION and not self.trusted_proxy:
            logger.warning(
                "trusted_proxy_disabled",
                message=(
                    "Client IPs resolve to a shared placeholder; rate limits "
                    "apply to all clients collectively."
                ),
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_single_tenant(self) -> bool:
        return self.tenancy_mode == TenancyMode.SINGLE


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
