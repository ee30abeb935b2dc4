from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from streamline.config import get_settings, reset_settings_cache
from streamline.logging import get_logger
from streamline.service.access import AccessResolver
from streamline.service.auth import AuthService
from streamline.service.email import EmailService
from streamline.service.invitation import InvitationService
from streamline.service.rate_limit import RateLimiter
from streamline.service.session import SessionManager
from streamline.service.setup import SetupService
from streamline.service.team import TeamService
from streamline.storage.memory import MemoryStore
from streamline.storage.postgres import PostgresStore
from streamline.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            tenancy_mode=self.settings.tenancy_mode.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode so per-test event loops never own the pool
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits and password reset tokens; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and password "
                    "reset tokens are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.sessions = SessionManager(
            self.store,
            lifetime=timedelta(days=self.settings.session_lifetime_days),
            renewal_threshold=timedelta(days=self.settings.session_renewal_threshold_days),
            secure_cookies=self.settings.is_production,
        )
        self.limiter = RateLimiter.from_settings(self.settings, self.cache)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.limiter,
            self.settings,
            cache=self.cache,
            email_service=self.email,
        )
        self.invitations = InvitationService(
            self.store, self.sessions, self.settings, email_service=self.email
        )
        self.team = TeamService(self.store)
        self.setup = SetupService(self.store, self.sessions, self.settings)
        self.access = AccessResolver(self.store)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            rate_limit_fail_closed=self.settings.rate_limit_fail_closed,
            email_configured=self.email.is_configured,
        )

    async def aclose(self) -> None:
        await self.email.drain()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
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
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
