from __future__ import annotations

import asyncio
import math
import threading
import time
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from coursegate.config import Settings, get_settings, reset_settings_cache
from coursegate.logging import get_logger
from coursegate.service.audit import AuditSink
from coursegate.service.auth import AuthService
from coursegate.service.guard import AccessGuard
from coursegate.service.incidents import IncidentService
from coursegate.service.invites import InviteService
from coursegate.service.login_attempts import LoginAttemptTracker, MemoryLoginAttemptStore
from coursegate.service.migrations import repair_missing_roles
from coursegate.service.passwords import PasswordService
from coursegate.service.recovery import RecoveryService
from coursegate.service.tokens import TokenService
from coursegate.storage.memory import MemoryStore
from coursegate.storage.postgres import PostgresStore
from coursegate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:secret@host:6379/0`` -> ``redis://:***@host:6379/0``"""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.netloc.rsplit("@", 1)[-1]
        return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))
    except ValueError:
        return "***unparseable-url***"


class LocalRateLimiter:
    """Process-local token buckets used when Redis is not configured.

    Same refill arithmetic as the Redis script: ``limit`` tokens refilled
    evenly over ``window_seconds``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def take(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        refill_rate = limit / window_seconds
        now = self._clock()
        with self._lock:
            tokens, updated_at = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - updated_at) * refill_rate)
            if tokens >= cost:
                tokens -= cost
                self._buckets[key] = (tokens, now)
                return True, int(tokens), 0
            self._buckets[key] = (tokens, now)
            return False, int(tokens), max(1, math.ceil((cost - tokens) / refill_rate))


def _build_store(settings: Settings):
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store = MemoryStore(fs_root=settings.shared_fs_root)
        else:
            store = PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def _build_cache(settings: Settings) -> Optional[Union[RedisCache, SyncRedisCache]]:
    """Connect the rate-limit cache, or return ``None`` where running without Redis is allowed.

    Raises:
        RuntimeError: Redis is unreachable outside TEST_MODE and
            ALLOW_REDIS_FALLBACK_DEV
    """
    failure: Optional[Exception] = None
    if settings.redis_url:
        # TestClient runs each request on its own loop, so tests get the sync client
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for the login and recovery throttles; start Redis or set "
            "TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true to use process-local buckets."
        ) from failure
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Process-wide wiring of settings, store, cache and services."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = _build_store(self.settings)
        self.cache = _build_cache(self.settings)
        self.local_rate_limiter = LocalRateLimiter()

        self.tokens = TokenService(self.settings)
        self.passwords = PasswordService()
        self.audit = AuditSink(self.store)
        self.incidents = IncidentService(self.store, self.audit)
        self.login_attempt_store = MemoryLoginAttemptStore(
            threshold=self.settings.login_attempt_threshold,
            window=timedelta(seconds=self.settings.login_attempt_window_seconds),
        )
        self.login_attempts = LoginAttemptTracker(
            self.store,
            self.login_attempt_store,
            self.incidents,
            self.audit,
            threshold=self.settings.login_attempt_threshold,
            window_minutes=self.settings.login_attempt_window_seconds // 60,
        )
        self.guard = AccessGuard(self.store, self.tokens, self.settings)
        self.invites = InviteService(self.store, self.tokens, self.audit, self.settings)
        self.recovery = RecoveryService(
            self.store, self.tokens, self.passwords, self.audit, self.settings
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.passwords,
            self.login_attempts,
            self.invites,
            self.recovery,
            self.incidents,
            self.audit,
            self.settings,
        )

        repaired = repair_missing_roles(self.store, self.settings.default_repair_role)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            roles_repaired=len(repaired),
            admin_invite_code_configured=bool(self.settings.admin_invite_code),
            security_invite_code_configured=bool(self.settings.security_invite_code),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process runtime, building it on first use.

    The unlocked read serves every call after the first; the re-check under
    the lock keeps two first callers from both building one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        asyncio.run(cache.close())
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from fresh settings; refuses outside TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                # connection may already be gone
                logger.debug("runtime_cache_close_failed", error=str(exc))

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
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Take ``cost`` tokens from the bucket for ``key``.

    Redis holds the buckets when it is configured; otherwise the runtime's
    process-local limiter does, so throttling never silently switches off.

    Returns:
        ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
        ``return_remaining`` is set
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    allowed, remaining, reset_seconds = runtime.local_rate_limiter.take(
        key, limit, window_seconds, cost
    )
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
