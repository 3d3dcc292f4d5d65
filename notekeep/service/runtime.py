from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from notekeep.config import get_settings, reset_settings_cache
from notekeep.logging import get_logger
from notekeep.service.auth import AuthService
from notekeep.service.email import EmailService
from notekeep.storage.memory import MemoryStore
from notekeep.storage.postgres import PostgresStore
from notekeep.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password part of a connection URL with ``***`` for logging."""
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


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in tests: each test runs on its own event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for request throttling; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
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
            timeout=self.settings.email_timeout_seconds,
        )
        self.auth = AuthService(self.store, self.settings, email=self.email)
        self.settings_provider = self.auth.settings_provider

        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        self.auth.shutdown()
        if self.cache is not None:
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
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.auth.shutdown()
            if isinstance(runtime.cache, SyncRedisCache):
                asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket request throttle; Redis when available, else per process.

    Returns ``(allowed, remaining, retry_after_seconds)``.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)

    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last = runtime._local_rate_limits.get(key, (float(limit), now))
        tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
    retry_after = 0 if allowed else max(1, int((cost - tokens) / refill_rate + 0.999))
    return allowed, int(tokens), retry_after
