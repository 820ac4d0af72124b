"""Tests for the cache manager."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as aioredis

from searchindex.cache import manager as cache_module
from searchindex.cache.manager import CacheManager
from searchindex.config.settings import CacheSettings


@pytest.fixture
def memory_cache() -> CacheManager:
    return CacheManager(CacheSettings(backend="memory"))


@pytest.fixture
def redis_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def redis_cache(redis_client: AsyncMock) -> CacheManager:
    cache = CacheManager(CacheSettings(backend="redis"))
    cache._client = redis_client
    return cache


class TestMemoryBackend:
    async def test_set_get_delete(self, memory_cache: CacheManager) -> None:
        await memory_cache.initialize()
        await memory_cache.set("k", {"vector": [1.0, 2.0]})
        assert await memory_cache.get("k") == {"vector": [1.0, 2.0]}
        await memory_cache.delete("k")
        assert await memory_cache.get("k") is None
        assert memory_cache.redis is None

    async def test_ttl_expires(self, memory_cache: CacheManager, monkeypatch: pytest.MonkeyPatch) -> None:
        now = [1000.0]
        monkeypatch.setattr(cache_module, "time", SimpleNamespace(monotonic=lambda: now[0]))

        await memory_cache.set("k", "v", ttl=10)
        now[0] += 9
        assert await memory_cache.get("k") == "v"
        now[0] += 1
        assert await memory_cache.get("k") is None
        assert "k" not in memory_cache._memory_cache


class TestRedisBackend:
    async def test_values_round_trip_as_json(self, redis_cache: CacheManager, redis_client: AsyncMock) -> None:
        await redis_cache.set("k", [0.5], ttl=60)
        redis_client.setex.assert_awaited_once_with("k", 60, "[0.5]")

        await redis_cache.set("forever", {"a": 1})
        redis_client.set.assert_awaited_once_with("forever", '{"a": 1}')

        redis_client.get.return_value = "[0.5]"
        assert await redis_cache.get("k") == [0.5]
        redis_client.get.return_value = None
        assert await redis_cache.get("missing") is None

    async def test_failures_become_misses(self, redis_cache: CacheManager, redis_client: AsyncMock) -> None:
        redis_client.get.side_effect = aioredis.ConnectionError("down")
        redis_client.setex.side_effect = aioredis.ConnectionError("down")
        redis_client.delete.side_effect = aioredis.ConnectionError("down")

        assert await redis_cache.get("k") is None
        await redis_cache.set("k", 1, ttl=5)
        await redis_cache.delete("k")

    async def test_shutdown_closes_client(self, redis_cache: CacheManager, redis_client: AsyncMock) -> None:
        await redis_cache.shutdown()
        redis_client.aclose.assert_awaited_once()
        assert redis_cache.redis is None

    async def test_unreachable_redis_falls_back_to_memory(self, monkeypatch: pytest.MonkeyPatch) -> None:
        client = AsyncMock()
        client.ping.side_effect = aioredis.ConnectionError("refused")
        monkeypatch.setattr(aioredis, "from_url", lambda url, **kwargs: client)

        cache = CacheManager(CacheSettings(backend="redis", redis_url="redis://nowhere:6379/0"))
        await cache.initialize()

        assert cache.settings.backend == "memory"
        assert cache.redis is None
        await cache.set("k", "v")
        assert await cache.get("k") == "v"
