from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from clubauth.config import Settings, get_settings, reset_settings_cache
from clubauth.logging import get_logger
from clubauth.service.auth import AuthService
from clubauth.service.coaches import CoachService
from clubauth.service.email import EmailService, EmailTransport, ResendTransport, SmtpTransport
from clubauth.service.email_templates import EmailComposer, LinkBuilder
from clubauth.service.passwords import BreachChecker
from clubauth.service.platform import PlatformService
from clubauth.service.rate_limit import LoginRateLimiter
from clubauth.service.tenants import TenantRegistry
from clubauth.service.tokens import TokenService
from clubauth.storage.memory import MemoryStore
from clubauth.storage.postgres import PostgresStore
from clubauth.storage.tenant_store import FileTenantStore, RedisTenantStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_email_transport(settings: Settings) -> Optional[EmailTransport]:
    if settings.resend_api_key:
        return ResendTransport(settings.resend_api_key)
    if settings.smtp_host:
        return SmtpTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )
    return None


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
                )
            else:
                if not self.settings.database_url:
                    raise RuntimeError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
                self.store = PostgresStore(
                    self.settings.database_url,
                    max_size=self.settings.db_pool_max_size,
                    connect_timeout=self.settings.db_connect_timeout_seconds,
                    idle_timeout=self.settings.db_idle_timeout_seconds,
                    mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        if self.settings.tenant_store_redis_url:
            self.tenant_store = RedisTenantStore(self.settings.tenant_store_redis_url)
            logger.info(
                "runtime_tenant_store_initialized",
                store_type="redis",
                redis_url=_mask_url_password(self.settings.tenant_store_redis_url),
            )
        else:
            self.tenant_store = FileTenantStore(self.settings.tenant_config_dir)
            logger.info("runtime_tenant_store_initialized", store_type="file")
        self.tenants = TenantRegistry(self.tenant_store)

        links = LinkBuilder(
            base_domain=self.settings.base_domain,
            dev_port=self.settings.dev_port,
            development=self.settings.is_development,
        )
        self.email = EmailService(
            transport=build_email_transport(self.settings),
            composer=EmailComposer(
                brand_name=self.settings.email_from_name,
                links=links,
                logo_path=self.settings.email_logo_path,
            ),
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            notification_email=self.settings.admin_notification_email,
        )
        self.tokens = TokenService(self.settings)
        self.breach = BreachChecker(
            self.settings.breach_api_url,
            timeout=self.settings.breach_check_timeout_seconds,
            enabled=self.settings.password_breach_check,
        )
        self.limiter = LoginRateLimiter(
            self.store,
            max_failures=self.settings.login_max_failures,
            window_minutes=self.settings.login_window_minutes,
        )
        self.auth = AuthService(
            self.store,
            tenants=self.tenants,
            email=self.email,
            tokens=self.tokens,
            breach=self.breach,
            limiter=self.limiter,
            settings=self.settings,
        )
        self.coaches = CoachService(self.store, tenants=self.tenants, email=self.email)
        self.platform = PlatformService(
            self.store, tenants=self.tenants, email=self.email, auth=self.auth
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            email_configured=self.email.is_configured,
            breach_check=self.settings.password_breach_check,
            environment=self.settings.node_env.value,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads building separate runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
