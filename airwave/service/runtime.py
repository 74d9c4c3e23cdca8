from __future__ import annotations

import asyncio
import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from airwave.config import get_settings, reset_settings_cache
from airwave.logging import get_logger
from airwave.service.auth import Authenticator
from airwave.service.permissions import PermissionService
from airwave.service.tokens import TokenService
from airwave.storage.memory import MemoryStore
from airwave.storage.postgres import PostgresStore
from airwave.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

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
    """Holds the per-process service instances for the FastAPI app."""

    def __init__(self, *, store: Any = None, cache: Optional[RedisCache] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        if store is None:
            try:
                store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store = store

        if cache is None:
            if not self.settings.redis_url:
                raise RuntimeError(
                    "REDIS_URL is required for refresh-token indices, denylists and permission caches"
                )
            cache = RedisCache(
                self.settings.redis_url,
                operation_timeout=self.settings.kv_operation_timeout,
            )
        self.cache = cache

        self.tokens = TokenService(self.settings, self.cache, self.store)
        self.permissions = PermissionService(
            self.store,
            self.cache,
            cache_ttl=self.settings.permission_cache_ttl_seconds,
        )
        self.auth = Authenticator(self.tokens, self.store, self.cache)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_url=_mask_url_password(self.cache.redis_url),
            access_ttl=self.tokens.access_ttl,
            refresh_ttl=self.tokens.refresh_ttl,
            refresh_rotation=self.settings.refresh_token_rotation,
        )

    async def close(self) -> None:
        await self.cache.close()
        closer = getattr(self.store, "close", None)
        if callable(closer):
            closer()


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


_pending_closes: set[asyncio.Task] = set()


def _close_done(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("runtime_close_failed", error=str(task.exception()))


def reset_runtime_for_tests(
    *, store: Any = None, cache: Optional[RedisCache] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    ``store`` and ``cache`` replace the backends the settings would select.
    """
    global runtime

    with _runtime_lock:
        previous = runtime
        if previous is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    task = loop.create_task(previous.close())
                    _pending_closes.add(task)
                    task.add_done_callback(_close_done)
                else:
                    asyncio.run(previous.close())
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(store=store, cache=cache)
        return runtime
