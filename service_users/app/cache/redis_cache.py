"""
Redis cache adapter for the Users Service.

The adapter knows nothing about users: it stores opaque bytes under string
keys. Failures surface as ``UpstreamUnavailableError`` so the repository can
decide whether a cache problem matters (it never does for correctness).
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.deadline import with_budget
from shared.errors import UpstreamUnavailableError
from shared.logging import get_logger
from .key_enumeration import KeyEnumeration, ScanEnumeration

T = TypeVar("T")


class RedisCache:
    """Key-value cache with per-key expiry on top of redis.asyncio."""

    def __init__(
        self,
        redis_url: str,
        *,
        timeout: float = 1.0,
        max_connections: int = 10,
        enumeration: Optional[KeyEnumeration] = None,
    ):
        self.redis_url = redis_url
        self.timeout = timeout
        self.max_connections = max_connections
        self.enumeration = enumeration or ScanEnumeration()
        self.logger = get_logger("users.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Create the client pool. An unreachable Redis leaves the service running with a cold cache."""
        self.redis = redis.from_url(
            self.redis_url,
            socket_connect_timeout=5,
            socket_timeout=self.timeout,
            max_connections=self.max_connections,
            health_check_interval=30,
        )

        try:
            await with_budget(self.redis.ping(), self.timeout)
            self.logger.info("Redis cache started", enumeration=self.enumeration.name)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self.logger.warning("Redis unreachable at startup, continuing with a cold cache", error=str(e))

    async def stop(self):
        """Close the client pool."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache stopped")

    async def _run(self, operation: str, call: Callable[[redis.Redis], Awaitable[T]]) -> T:
        if self.redis is None:
            raise UpstreamUnavailableError("redis", "client is not started")
        try:
            return await with_budget(call(self.redis), self.timeout)
        except asyncio.TimeoutError:
            raise UpstreamUnavailableError("redis", f"{operation} timed out")
        except (RedisError, OSError) as e:
            raise UpstreamUnavailableError("redis", f"{operation} failed: {e}")

    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None on a miss."""
        return await self._run("get", lambda client: client.get(key))

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        async def call(client: redis.Redis) -> None:
            await client.set(key, value, ex=ttl_seconds)
            await self.enumeration.track(client, key, ttl_seconds)

        await self._run("set", call)
        self.logger.debug("Cached value", key=key, ttl=ttl_seconds)

    async def set_if_absent(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        """SET NX with expiry. True when this call created the key."""
        async def call(client: redis.Redis) -> bool:
            created = await client.set(key, value, ex=ttl_seconds, nx=True)
            if created:
                await self.enumeration.track(client, key, ttl_seconds)
            return bool(created)

        return await self._run("set_if_absent", call)

    async def delete(self, *keys: str) -> int:
        """Delete keys; returns how many existed."""
        if not keys:
            return 0

        async def call(client: redis.Redis) -> int:
            deleted = await client.delete(*keys)
            await self.enumeration.untrack(client, keys)
            return deleted

        return await self._run("delete", call)

    async def exists(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._run("exists", lambda client: client.exists(*keys))

    async def increment(self, key: str, window_seconds: int) -> int:
        """INCR, setting the expiry only when this call created the counter."""
        async def call(client: redis.Redis) -> int:
            count = await client.incr(key)
            if count == 1:
                await client.expire(key, window_seconds)
            return count

        return await self._run("increment", call)

    async def keys_matching(self, pattern: str) -> List[str]:
        """Enumerate keys matching a glob pattern using the configured strategy."""
        return await self._run("keys_matching", lambda client: self.enumeration.keys(client, pattern))

    async def ping(self) -> None:
        """Raise UpstreamUnavailableError unless Redis answers."""
        await self._run("ping", lambda client: client.ping())

    async def info(self) -> dict:
        """Server stats used by the stats endpoint."""
        info: Any = await self._run("info", lambda client: client.info())
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "redis_version": info.get("redis_version"),
            "used_memory": info.get("used_memory_human"),
            "connected_clients": info.get("connected_clients"),
            "hit_rate": hits / (hits + misses) if hits + misses else 0.0,
        }
