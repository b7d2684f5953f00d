"""
Key enumeration strategies for bulk cache invalidation.

``RedisCache.keys_matching`` delegates to one of these, so the way keys are
found (KEYS, SCAN, or a registry set) can change without touching callers.
"""

from fnmatch import fnmatchcase
from typing import Iterable, List, Optional, Sequence

import redis.asyncio as redis


def _decode(key) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else key


class KeyEnumeration:
    """Base strategy. ``track``/``untrack`` are hooks for strategies that keep state."""

    name = "base"

    async def keys(self, client: redis.Redis, pattern: str) -> List[str]:
        raise NotImplementedError

    async def track(self, client: redis.Redis, key: str, ttl_seconds: Optional[int] = None) -> None:
        return None

    async def untrack(self, client: redis.Redis, keys: Sequence[str]) -> None:
        return None


class KeysEnumeration(KeyEnumeration):
    """``KEYS pattern``. Blocks the server while it walks the keyspace; fine for small deployments."""

    name = "keys"

    async def keys(self, client: redis.Redis, pattern: str) -> List[str]:
        return [_decode(key) for key in await client.keys(pattern)]


class ScanEnumeration(KeyEnumeration):
    """Incremental ``SCAN MATCH pattern``."""

    name = "scan"

    def __init__(self, count: int = 100):
        self.count = count

    async def keys(self, client: redis.Redis, pattern: str) -> List[str]:
        found = set()
        async for key in client.scan_iter(match=pattern, count=self.count):
            found.add(_decode(key))
        return sorted(found)


class RegistryEnumeration(KeyEnumeration):
    """Keep a Redis set of live keys per tracked prefix and read it instead of scanning.

    Each registry set expires with the newest key tracked in it. Members whose
    keys have expired on their own are pruned whenever the registry is read.
    Patterns outside every tracked prefix fall back to ``SCAN``.
    """

    name = "registry"

    def __init__(
        self,
        tracked_prefixes: Iterable[str],
        registry_key: str = "cache:key_registry",
        fallback: Optional[KeyEnumeration] = None,
    ):
        self.tracked_prefixes = tuple(tracked_prefixes)
        self.registry_key = registry_key
        self.fallback = fallback or ScanEnumeration()

    def registry_for(self, key: str) -> Optional[str]:
        for prefix in self.tracked_prefixes:
            if key.startswith(prefix):
                return f"{self.registry_key}:{prefix}"
        return None

    async def track(self, client: redis.Redis, key: str, ttl_seconds: Optional[int] = None) -> None:
        registry = self.registry_for(key)
        if registry:
            await client.sadd(registry, key)
            if ttl_seconds:
                await client.expire(registry, ttl_seconds)

    async def untrack(self, client: redis.Redis, keys: Sequence[str]) -> None:
        by_registry = {}
        for key in keys:
            registry = self.registry_for(key)
            if registry:
                by_registry.setdefault(registry, []).append(key)
        for registry, members in by_registry.items():
            await client.srem(registry, *members)

    async def keys(self, client: redis.Redis, pattern: str) -> List[str]:
        registries = [
            f"{self.registry_key}:{prefix}"
            for prefix in self.tracked_prefixes
            if pattern.startswith(prefix)
        ]
        if not registries:
            return await self.fallback.keys(client, pattern)

        found = set()
        for registry in registries:
            members = sorted(
                member for member in (_decode(m) for m in await client.smembers(registry))
                if fnmatchcase(member, pattern)
            )
            if not members:
                continue

            async with client.pipeline(transaction=False) as pipe:
                for member in members:
                    pipe.exists(member)
                alive = await pipe.execute()

            stale = [member for member, exists in zip(members, alive) if not exists]
            if stale:
                await client.srem(registry, *stale)
            found.update(member for member, exists in zip(members, alive) if exists)
        return sorted(found)


def build_enumeration(name: str, tracked_prefixes: Iterable[str] = ()) -> KeyEnumeration:
    """Strategy factory keyed by the ``cache_key_enumeration`` setting."""
    if name == "keys":
        return KeysEnumeration()
    if name == "scan":
        return ScanEnumeration()
    if name == "registry":
        return RegistryEnumeration(tracked_prefixes)
    raise ValueError(f"Unknown key enumeration strategy: {name}")
