from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from studiogate.config import get_settings, reset_settings_cache
from studiogate.logging import get_logger, mask_email
from studiogate.service.email import EmailService
from studiogate.service.otp import OTPService
from studiogate.service.sessions import SessionManager
from studiogate.storage.cache import SessionCache
from studiogate.storage.errors import ConstraintViolation
from studiogate.storage.local_cache import LocalCache
from studiogate.storage.memory import MemoryStore
from studiogate.storage.postgres import PostgresStore
from studiogate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide store, cache and services for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
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

        self.cache = self._build_cache()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            dev_mode=not self.settings.is_production,
        )
        self.sessions = SessionManager(self.store, self.cache, self.settings)
        self.otp = OTPService(
            self.store, self.cache, self.sessions, self.email, self.settings
        )
        self._seed_owner_account()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=not isinstance(self.cache, LocalCache),
            email_configured=self.email.is_configured,
        )

    def _build_cache(self) -> SessionCache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode to avoid binding to one event loop
                if self.settings.test_mode:
                    cache: SessionCache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions and OTP rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and rate limits "
                "live in this process only."
            ),
            mode=fallback_mode,
        )
        return LocalCache()

    def _seed_owner_account(self) -> None:
        owner_email = self.settings.owner_email
        if not owner_email or self.store.get_account() is not None:
            return
        try:
            account = self.store.create_account(owner_email)
        except ConstraintViolation:
            return
        logger.info("owner_account_seeded", account_id=account.id, to=mask_email(owner_email))

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
            try:
                asyncio.run(runtime.close())
            except RuntimeError as exc:
                logger.warning("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
