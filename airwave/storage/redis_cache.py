from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis

from airwave.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RedisCache:
    """Best-effort Redis wrapper for refresh-token indices, denylists and caches.

    Every command is bounded by ``operation_timeout``. Connection errors,
    timeouts and Redis errors are logged and turned into a neutral result
    (``None``, ``False``, ``0`` or an empty set) so callers never see them.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        if client is None and not redis_url:
            raise ValueError("RedisCache needs either redis_url or client")
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )

    async def _run(
        self, op: str, command: Callable[[], Awaitable[T]], default: T, **log_fields
    ) -> T:
        try:
            return await asyncio.wait_for(command(), timeout=self.operation_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "kv_operation_timeout",
                op=op,
                timeout=self.operation_timeout,
                **log_fields,
            )
        except Exception as exc:
            logger.warning(
                "kv_operation_failed",
                op=op,
                error_type=type(exc).__name__,
                error=str(exc),
                **log_fields,
            )
        return default

    async def ping(self) -> bool:
        return bool(await self._run("ping", lambda: self.client.ping(), False))

    async def close(self) -> None:
        closer = getattr(self.client, "aclose", None) or getattr(self.client, "close", None)
        if closer is None:
            return
        try:
            result = closer()
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            logger.warning("kv_close_failed", error=str(exc))

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", lambda: self.client.get(key), None, key=key)

    async def set(self, key: str, value: str, *, ex: Optional[int] = None) -> bool:
        if ex is not None:
            ex = max(1, int(ex))
        result = await self._run(
            "set", lambda: self.client.set(key, value, ex=ex), None, key=key
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(
            await self._run("delete", lambda: self.client.delete(*keys), 0, keys=len(keys))
        )

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", lambda: self.client.exists(key), 0, key=key))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run("sadd", lambda: self.client.sadd(key, *members), 0, key=key))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run("srem", lambda: self.client.srem(key, *members), 0, key=key))

    async def smembers(self, key: str) -> set[str]:
        members = await self._run("smembers", lambda: self.client.smembers(key), None, key=key)
        return set(members or ())

    async def expire(self, key: str, seconds: int) -> bool:
        seconds = max(1, int(seconds))
        return bool(
            await self._run("expire", lambda: self.client.expire(key, seconds), False, key=key)
        )

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("kv_corrupt_json", key=key)
            return None

    async def set_json(self, key: str, value: Any, *, ex: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value, separators=(",", ":")), ex=ex)

    async def cache_refresh_token(
        self, token_hash: str, entry: dict, user_id: str, ttl_seconds: int
    ) -> bool:
        """Write the index entry and track its hash in the user's set in one round trip."""
        ttl = max(1, int(ttl_seconds))
        user_key = f"user:{user_id}:refresh_tokens"

        async def _write() -> list:
            pipe = self.client.pipeline()
            pipe.set(
                f"refresh_token:{token_hash}",
                json.dumps(entry, separators=(",", ":")),
                ex=ttl,
            )
            pipe.sadd(user_key, token_hash)
            pipe.expire(user_key, ttl)
            return await pipe.execute()

        result = await self._run("cache_refresh_token", _write, None, user_id=user_id)
        return result is not None

    async def denylist_access_token(self, token_hash: str, ttl_seconds: int) -> bool:
        """Deny an access token until it would have expired anyway."""
        if ttl_seconds <= 0:
            return True
        return await self.set(f"blocklist:{token_hash}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, token_hash: str) -> bool:
        return await self.exists(f"blocklist:{token_hash}")
