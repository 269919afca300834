from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clubauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment modes recognised through ``NODE_ENV``."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs: Any):
    return Field(default, json_schema_extra={"env": env}, **kwargs)


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("rundeklar", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)

    # login rate limiting
    login_max_failures: int = env_field(5, "LOGIN_MAX_FAILURES", ge=1)
    login_window_minutes: int = env_field(15, "LOGIN_WINDOW_MINUTES", ge=1)

    # password breach lookup
    password_breach_check: bool = env_field(True, "PASSWORD_BREACH_CHECK")
    breach_api_url: str = env_field(
        "https://api.pwnedpasswords.com/range/", "BREACH_API_URL"
    )
    breach_check_timeout_seconds: float = env_field(5.0, "BREACH_CHECK_TIMEOUT_SECONDS")

    # outbound email
    resend_api_key: str | None = env_field(None, "RESEND_API_KEY")
    email_from_address: str = env_field("onboarding@resend.dev", "RESEND_FROM_EMAIL")
    email_from_name: str = env_field("Herlev Hjorten", "RESEND_FROM_NAME")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    admin_notification_email: str | None = env_field(None, "ADMIN_NOTIFICATION_EMAIL")
    email_logo_path: str | None = env_field(None, "EMAIL_LOGO_PATH")

    # link building
    base_domain: str = env_field("rundeklar.dk", "BASE_DOMAIN")
    app_url: str = env_field("http://localhost:5173", "APP_URL")
    node_env: Environment = env_field(Environment.PRODUCTION, "NODE_ENV")

    # http surface
    allowed_origins: str | None = env_field(None, "ALLOWED_ORIGINS")
    use_httponly_cookies: bool = env_field(False, "USE_HTTPONLY_COOKIES")

    # storage
    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/clubauth", "SHARED_FS_ROOT")
    db_pool_max_size: int = env_field(1, "DB_POOL_MAX_SIZE", ge=1)
    db_connect_timeout_seconds: float = env_field(10.0, "DB_CONNECT_TIMEOUT_SECONDS")
    db_idle_timeout_seconds: float = env_field(20.0, "DB_IDLE_TIMEOUT_SECONDS")
    tenant_config_dir: str = env_field("/srv/clubauth/tenants", "TENANT_CONFIG_DIR")
    tenant_store_redis_url: str | None = env_field(None, "TENANT_STORE_REDIS_URL")
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")
    totp_issuer: str = env_field("Herlev Hjorten", "TOTP_ISSUER")

    # maintenance
    session_reaper_interval_seconds: int = env_field(
        3600, "SESSION_REAPER_INTERVAL_SECONDS", ge=0
    )
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # Tokens cannot be minted or checked without it; refuse to start.
        if not value or not value.strip():
            raise ValueError("JWT_SECRET must be set")
        return value

    @field_validator("node_env", mode="before")
    @classmethod
    def _normalise_node_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value not in {e.value for e in Environment}:
                logger.warning("unknown_node_env", node_env=value)
                return Environment.PRODUCTION
        return value

    @field_validator("base_domain", "breach_api_url", "app_url")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode="after")
    def _check_database(self) -> "Settings":
        if not self.use_memory_store and not self.database_url:
            logger.warning("database_url_missing", use_memory_store=self.use_memory_store)
        return self

    @property
    def is_development(self) -> bool:
        return self.node_env == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.node_env == Environment.PRODUCTION

    @property
    def allowed_origin_list(self) -> list[str]:
        if not self.allowed_origins:
            return []
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def dev_port(self) -> str:
        """Port of the local frontend, used by hash-router links in development."""

        tail = self.app_url.rsplit(":", 1)
        if len(tail) == 2 and tail[1].split("/")[0].isdigit():
            return tail[1].split("/")[0]
        return "5173"


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
