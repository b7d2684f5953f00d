"""
Unit tests for the Redis cache adapter and key enumeration strategies.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from shared.errors import UpstreamUnavailableError
from service_users.app.cache.key_enumeration import (
    KeysEnumeration,
    RegistryEnumeration,
    ScanEnumeration,
    build_enumeration,
)
from service_users.app.cache.redis_cache import RedisCache


def scan_results(*keys):
    """Async iterator standing in for ``scan_iter``."""
    async def iterate():
        for key in keys:
            yield key
    return iterate()


def registry_client(members, alive):
    """Client whose registry set holds ``members`` and whose EXISTS pipeline returns ``alive``."""
    client = AsyncMock()
    client.smembers.return_value = members
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=alive)
    client.pipeline = MagicMock()
    client.pipeline.return_value.__aenter__.return_value = pipe
    client.pipeline.return_value.__aexit__.return_value = False
    return client


class TestRedisCache:
    """Test cases for RedisCache."""

    @pytest.fixture
    def client(self):
        return AsyncMock()

    @pytest.fixture
    def cache(self, client):
        """RedisCache wired to a mocked client."""
        cache = RedisCache("redis://localhost:6379/0", timeout=0.5)
        cache.redis = client
        return cache

    @pytest.mark.asyncio
    async def test_get(self, cache, client):
        client.get.return_value = b"payload"
        assert await cache.get("user:1") == b"payload"
        client.get.assert_awaited_once_with("user:1")

    @pytest.mark.asyncio
    async def test_get_miss(self, cache, client):
        client.get.return_value = None
        assert await cache.get("user:1") is None

    @pytest.mark.asyncio
    async def test_set_uses_expiry(self, cache, client):
        """Values are written with a per-key expiry."""
        await cache.set("user:1", b"payload", 3600)
        client.set.assert_awaited_once_with("user:1", b"payload", ex=3600)

    @pytest.mark.asyncio
    async def test_set_if_absent(self, cache, client):
        """SET NX reports whether this call created the key."""
        client.set.return_value = True
        assert await cache.set_if_absent("lock:1", b"1", 10) is True
        client.set.assert_awaited_with("lock:1", b"1", ex=10, nx=True)

        client.set.return_value = None
        assert await cache.set_if_absent("lock:1", b"1", 10) is False

    @pytest.mark.asyncio
    async def test_delete_without_keys(self, cache, client):
        """Deleting nothing is a no-op that never reaches Redis."""
        assert await cache.delete() == 0
        client.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete(self, cache, client):
        client.delete.return_value = 2
        assert await cache.delete("a", "b") == 2
        client.delete.assert_awaited_once_with("a", "b")

    @pytest.mark.asyncio
    async def test_exists(self, cache, client):
        client.exists.return_value = 1
        assert await cache.exists("a", "b") == 1
        assert await cache.exists() == 0

    @pytest.mark.asyncio
    async def test_increment_sets_expiry_on_first_hit(self, cache, client):
        """The window starts with the first increment."""
        client.incr.return_value = 1
        assert await cache.increment("rate_limit:1.2.3.4", 60) == 1
        client.expire.assert_awaited_once_with("rate_limit:1.2.3.4", 60)

    @pytest.mark.asyncio
    async def test_increment_keeps_existing_expiry(self, cache, client):
        """Later increments do not extend the window."""
        client.incr.return_value = 7
        assert await cache.increment("rate_limit:1.2.3.4", 60) == 7
        client.expire.assert_not_called()

    @pytest.mark.asyncio
    async def test_redis_error_maps_to_upstream(self, cache, client):
        client.get.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await cache.get("user:1")

        assert exc_info.value.service == "redis"
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_maps_to_upstream(self, cache, client):
        client.get.side_effect = asyncio.TimeoutError()

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await cache.get("user:1")

        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_not_started(self):
        cache = RedisCache("redis://localhost:6379/0")
        with pytest.raises(UpstreamUnavailableError):
            await cache.ping()

    @pytest.mark.asyncio
    async def test_keys_matching_uses_strategy(self, client):
        """keys_matching delegates to the configured enumeration."""
        cache = RedisCache("redis://localhost:6379/0", enumeration=KeysEnumeration())
        cache.redis = client
        client.keys.return_value = [b"users:list:1:10", b"users:list:2:10"]

        keys = await cache.keys_matching("users:list:*")

        assert keys == ["users:list:1:10", "users:list:2:10"]
        client.keys.assert_awaited_once_with("users:list:*")

    @pytest.mark.asyncio
    async def test_info(self, cache, client):
        client.info.return_value = {
            "redis_version": "7.2.4",
            "used_memory_human": "1.2M",
            "connected_clients": 3,
            "keyspace_hits": 3,
            "keyspace_misses": 1,
        }

        info = await cache.info()

        assert info["redis_version"] == "7.2.4"
        assert info["used_memory"] == "1.2M"
        assert info["hit_rate"] == 0.75

    @pytest.mark.asyncio
    async def test_start_tolerates_unreachable_redis(self):
        """A failed startup ping leaves the client in place for later calls."""
        client = AsyncMock()
        client.ping.side_effect = RedisConnectionError("connection refused")
        cache = RedisCache("redis://localhost:6379/0")

        with patch("service_users.app.cache.redis_cache.redis.from_url", return_value=client) as from_url:
            await cache.start()

        from_url.assert_called_once()
        assert cache.redis is client

    @pytest.mark.asyncio
    async def test_stop_closes_client(self, cache, client):
        await cache.stop()
        client.aclose.assert_awaited_once()
        assert cache.redis is None


class TestKeyEnumeration:
    """Test cases for key enumeration strategies."""

    @pytest.mark.asyncio
    async def test_scan_collects_unique_keys(self):
        """SCAN may repeat keys; the result does not."""
        client = MagicMock()
        client.scan_iter.return_value = scan_results(b"users:list:2:10", b"users:list:1:10", b"users:list:1:10")

        keys = await ScanEnumeration(count=50).keys(client, "users:list:*")

        assert keys == ["users:list:1:10", "users:list:2:10"]
        client.scan_iter.assert_called_once_with(match="users:list:*", count=50)

    @pytest.mark.asyncio
    async def test_registry_tracks_prefixed_keys_only(self):
        client = AsyncMock()
        strategy = RegistryEnumeration(["users:list"])

        await strategy.track(client, "users:list:1:10", 1800)
        await strategy.track(client, "user:abc", 3600)

        client.sadd.assert_awaited_once_with("cache:key_registry:users:list", "users:list:1:10")
        client.expire.assert_awaited_once_with("cache:key_registry:users:list", 1800)

    @pytest.mark.asyncio
    async def test_registry_keys_filters_by_pattern(self):
        client = registry_client({b"users:list:1:10", b"users:list:2:10"}, alive=[1, 1])
        strategy = RegistryEnumeration(["users:list"])

        assert await strategy.keys(client, "users:list:*") == ["users:list:1:10", "users:list:2:10"]
        client.srem.assert_not_called()

    @pytest.mark.asyncio
    async def test_registry_prunes_expired_members(self):
        """Members whose keys expired on their own are dropped from the set."""
        client = registry_client({b"users:list:1:10", b"users:list:2:10", b"users:list:3:10"}, alive=[1, 0, 0])
        strategy = RegistryEnumeration(["users:list"])

        keys = await strategy.keys(client, "users:list:*")

        assert keys == ["users:list:1:10"]
        client.srem.assert_awaited_once_with(
            "cache:key_registry:users:list", "users:list:2:10", "users:list:3:10"
        )

    @pytest.mark.asyncio
    async def test_registry_untracked_pattern_scans(self):
        """Singular keys are never registered, so their pattern goes to SCAN."""
        client = MagicMock()
        client.scan_iter.return_value = scan_results(b"user:1")
        strategy = RegistryEnumeration(["users:list"])

        assert await strategy.keys(client, "user:*") == ["user:1"]
        client.smembers.assert_not_called()

    @pytest.mark.asyncio
    async def test_registry_does_not_grow_with_singular_keys(self):
        """Caching many singular keys through RedisCache leaves the registry untouched."""
        client = AsyncMock()
        cache = RedisCache("redis://localhost:6379/0", enumeration=RegistryEnumeration(["users:list"]))
        cache.redis = client

        for index in range(50):
            await cache.set(f"user:{index}", b"payload", 1)
        await cache.set("users:list:1:10", b"[]", 1800)

        client.sadd.assert_awaited_once_with("cache:key_registry:users:list", "users:list:1:10")
        client.expire.assert_awaited_once_with("cache:key_registry:users:list", 1800)

    @pytest.mark.asyncio
    async def test_registry_untrack(self):
        client = AsyncMock()
        strategy = RegistryEnumeration(["users:list"])

        await strategy.untrack(client, ["users:list:1:10", "user:abc", "users:list:2:10"])

        client.srem.assert_awaited_once_with(
            "cache:key_registry:users:list", "users:list:1:10", "users:list:2:10"
        )

    @pytest.mark.asyncio
    async def test_cache_delete_untracks_with_registry(self):
        """Deleting through the cache keeps the registry in step."""
        client = AsyncMock()
        client.delete.return_value = 1
        cache = RedisCache("redis://localhost:6379/0", enumeration=RegistryEnumeration(["users:list"]))
        cache.redis = client

        await cache.delete("users:list:1:10")

        client.srem.assert_awaited_once_with("cache:key_registry:users:list", "users:list:1:10")

    def test_build_enumeration(self):
        assert build_enumeration("scan").name == "scan"
        assert build_enumeration("keys").name == "keys"
        registry = build_enumeration("registry", ["users:list"])
        assert registry.name == "registry"
        assert registry.tracked_prefixes == ("users:list",)

    def test_build_enumeration_unknown(self):
        with pytest.raises(ValueError):
            build_enumeration("bogus")
