from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokenward.config import Settings, get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.audit import StructlogAuditSink
from tokenward.service.auth import AuthService
from tokenward.service.sessions import SessionService
from tokenward.service.tokens import TokenCodec
from tokenward.storage.memory import MemoryStore
from tokenward.storage.memory_cache import MemoryCache
from tokenward.storage.postgres import PostgresStore
from tokenward.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

TokenIndexBackend = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

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
    """Builds the concrete stores and services from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    statement_timeout_seconds=self.settings.store_timeout_seconds,
                )
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

        self.cache: TokenIndexBackend = self._build_token_index()
        self.audit = StructlogAuditSink() if self.settings.audit_log_enabled else None
        self.codec = TokenCodec.from_settings(self.settings)
        self.sessions = SessionService(
            self.store,
            self.cache,
            self.store,
            self.codec,
            audit=self.audit,
            store_timeout_seconds=self.settings.store_timeout_seconds,
        )
        self.auth = AuthService(self.store, self.sessions, audit=self.audit)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            index_backend=type(self.cache).__name__,
            audit_enabled=self.audit is not None,
        )

    def _build_token_index(self) -> TokenIndexBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache: TokenIndexBackend = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the refresh token index; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh token index "
                "is in-process only and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_quietly(current: Runtime) -> None:
    try:
        if isinstance(current.cache, SyncRedisCache):
            asyncio.run(current.cache.close())
            return
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(current.close())
        except RuntimeError:
            asyncio.run(current.close())
    except Exception as exc:
        # Connection may already be closed
        logger.debug("runtime_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_quietly(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
