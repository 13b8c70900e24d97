from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.activity import ActivityLogService
from gatehouse.service.auth import AuthService
from gatehouse.service.email import EmailService
from gatehouse.service.lockout import AccountLockoutEngine
from gatehouse.service.permissions import PermissionResolver
from gatehouse.service.rate_limit import RateLimiter
from gatehouse.service.recovery import AccountRecovery
from gatehouse.service.runtime_config import RuntimeConfig
from gatehouse.service.sessions import SessionManager
from gatehouse.service.tokens import TokenCodec
from gatehouse.service.two_factor import PendingChallengeStore, TwoFactorEngine
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

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
                MemoryStore(secret_key=self.settings.secret_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, secret_key=self.settings.secret_key)
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

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode keeps the connection off the test event loop
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
                    "Redis is required for pending two-factor challenges; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; pending two-factor "
                    "challenges are held in process memory only."
                ),
                mode=fallback_mode,
            )

        self.activity = ActivityLogService(self.store)
        self.config = RuntimeConfig(self.store, activity=self.activity)
        self.codec = TokenCodec(
            memory_cost=self.settings.argon2_memory_cost,
            time_cost=self.settings.argon2_time_cost,
            hash_len=self.settings.argon2_hash_len,
            parallelism=self.settings.argon2_parallelism,
        )
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
        self.limiter = RateLimiter(self.activity, self.config)
        self.lockout = AccountLockoutEngine(self.store, self.config, self.activity)
        self.sessions = SessionManager(self.store, self.config)
        self.two_factor = TwoFactorEngine(
            self.store,
            self.codec,
            self.config,
            self.activity,
            issuer=self.settings.app_name,
            email=self.email,
        )
        self.pending = PendingChallengeStore(self.cache)
        self.permissions = PermissionResolver(self.store, self.activity)
        self.recovery = AccountRecovery(
            self.store,
            self.codec,
            self.config,
            self.activity,
            self.sessions,
            email=self.email,
        )
        self.auth = AuthService(
            store=self.store,
            codec=self.codec,
            config=self.config,
            activity=self.activity,
            limiter=self.limiter,
            lockout=self.lockout,
            sessions=self.sessions,
            two_factor=self.two_factor,
            pending=self.pending,
            permissions=self.permissions,
            recovery=self.recovery,
            email=self.email,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            cache, self.cache = self.cache, None
            await cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton; double-checked under a thread lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    """Close a cache from synchronous code.

    Callers inside an event loop must ``await Runtime.close()`` instead.
    """
    if isinstance(cache, SyncRedisCache):
        cache._sync_client.close()
        return
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
        return
    raise RuntimeError("inside an event loop; await Runtime.close() before resetting")


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except (RedisError, OSError) as exc:
                logger.warning("runtime_cache_close_failed", error_type=type(exc).__name__)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
