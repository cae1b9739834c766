from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Dict, Iterable, List, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from listeners.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class StoreUnavailableError(Exception):
    """Raised when the key-value store cannot complete a command."""

    def __init__(self, operation: str, error: BaseException | str):
        super().__init__(f"{operation} failed: {error}")
        self.operation = operation
        self.error = error


class KeyValueStore:
    """Shared async Redis connection used by the cache, limiter and token layers.

    Every command is bounded by ``operation_timeout`` and any transport
    failure surfaces as :class:`StoreUnavailableError`, so callers only have
    to handle one error type when deciding to degrade.
    """

    DEFAULT_OPERATION_TIMEOUT = 3.0

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        if client is None:
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=operation_timeout,
                socket_connect_timeout=operation_timeout,
            )
        self.client = client

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(operation, "timed out") from exc
        except (RedisError, ConnectionError, OSError) as exc:
            raise StoreUnavailableError(operation, exc) from exc

    async def ping(self) -> bool:
        return bool(await self._run("ping", self.client.ping()))

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def set(self, key: str, value: str, *, ex: Optional[int] = None) -> None:
        await self._run("set", self.client.set(key, value, ex=ex))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", self.client.delete(*keys)))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key)))

    async def incr(self, key: str) -> int:
        return int(await self._run("incr", self.client.incr(key)))

    async def decr(self, key: str) -> int:
        return int(await self._run("decr", self.client.decr(key)))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._run("expire", self.client.expire(key, seconds)))

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 when the key has no expiry, -2 when absent."""

        return int(await self._run("ttl", self.client.ttl(key)))

    async def keys(self, pattern: str) -> List[str]:
        async def _scan() -> List[str]:
            return [key async for key in self.client.scan_iter(match=pattern, count=500)]

        return await self._run("keys", _scan())

    async def mget(self, keys: Iterable[str]) -> List[Optional[str]]:
        keys = list(keys)
        if not keys:
            return []
        return list(await self._run("mget", self.client.mget(keys)))

    async def mset(self, items: Dict[str, str], *, ex: Optional[int] = None) -> None:
        if not items:
            return
        pipe = self.client.pipeline()
        for key, value in items.items():
            pipe.set(key, value, ex=ex)
        await self._run("mset", pipe.execute())

    async def info(self, section: str = "memory") -> Dict[str, Any]:
        return dict(await self._run("info", self.client.info(section)))

    async def close(self) -> None:
        close = getattr(self.client, "aclose", None) or getattr(self.client, "close", None)
        if close is None:
            return
        try:
            await close()
        except (RedisError, ConnectionError, OSError) as exc:
            logger.warning("kv_store_close_failed", error=str(exc))


__all__ = ["KeyValueStore", "StoreUnavailableError"]
