"""Tests for the swap counter stores."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError, RedisError

from searchindex.cache.manager import CacheManager
from searchindex.config.settings import SyncSettings
from searchindex.engines.base.exceptions import ConfigurationError, SwapCoordinationError
from searchindex.sync.counter import (
    MemorySwapCounterStore,
    RedisSwapCounterStore,
    SwapCounter,
    build_counter_store,
    counter_key,
)


class TestSwapCounter:
    def test_round_trip_dict(self) -> None:
        counter = SwapCounter(swap_handle="articles_swap", index_handle="articles", remaining=3)
        assert SwapCounter.from_dict(counter.to_dict()) == counter

    def test_counter_key_is_namespaced(self) -> None:
        assert counter_key("articles_swap") == "searchIndex:swapPending:articles_swap"


# ── Memory store ─────────────────────────────────────────────────────────────


class TestMemorySwapCounterStore:
    async def test_create_and_load(self) -> None:
        store = MemorySwapCounterStore()
        await store.create("a_swap", "a", 2)
        counter = await store.load("a_swap")
        assert counter is not None
        assert counter.remaining == 2
        assert counter.index_handle == "a"

    async def test_decrement_until_zero_fires_once(self) -> None:
        store = MemorySwapCounterStore()
        on_zero = AsyncMock()
        await store.create("a_swap", "a", 3)

        results = [await store.decrement("a_swap", on_zero) for _ in range(3)]

        assert results == [False, False, True]
        on_zero.assert_awaited_once()
        assert on_zero.await_args.args[0].index_handle == "a"
        assert await store.load("a_swap") is None

    async def test_concurrent_decrements_converge(self) -> None:
        store = MemorySwapCounterStore()
        fired: list[str] = []

        async def on_zero(counter: SwapCounter) -> None:
            await asyncio.sleep(0)
            fired.append(counter.swap_handle)

        await store.create("a_swap", "a", 25)
        results = await asyncio.gather(*(store.decrement("a_swap", on_zero) for _ in range(25)))

        assert fired == ["a_swap"]
        assert results.count(True) == 1
        assert await store.load("a_swap") is None

    async def test_locks_are_dropped_once_released(self) -> None:
        store = MemorySwapCounterStore()
        await store.create("a_swap", "a", 10)
        await asyncio.gather(*(store.decrement("a_swap", AsyncMock()) for _ in range(10)))
        await store.create("b_swap", "b", 1)

        async with store.lock("b_swap"):
            assert list(store._locks) == ["b_swap"]
        assert store._locks == {}
        assert store._lock_users == {}

    async def test_decrement_without_counter_is_noop(self) -> None:
        store = MemorySwapCounterStore()
        on_zero = AsyncMock()
        assert await store.decrement("missing_swap", on_zero) is False
        on_zero.assert_not_awaited()

    async def test_failed_follow_up_restores_counter(self) -> None:
        store = MemorySwapCounterStore()
        await store.create("a_swap", "a", 1)
        on_zero = AsyncMock(side_effect=RuntimeError("queue down"))

        with pytest.raises(RuntimeError, match="queue down"):
            await store.decrement("a_swap", on_zero)

        counter = await store.load("a_swap")
        assert counter is not None
        assert counter.remaining == 1

        # A retried decrement can now complete the countdown.
        retry = AsyncMock()
        assert await store.decrement("a_swap", retry) is True
        retry.assert_awaited_once()

    async def test_counters_are_independent_per_handle(self) -> None:
        store = MemorySwapCounterStore()
        on_zero = AsyncMock()
        await store.create("a_swap", "a", 1)
        await store.create("b_swap", "b", 2)

        assert await store.decrement("b_swap", on_zero) is False
        assert await store.decrement("a_swap", on_zero) is True
        remaining = await store.load("b_swap")
        assert remaining is not None and remaining.remaining == 1

    async def test_lock_timeout_raises_coordination_error(self) -> None:
        store = MemorySwapCounterStore(lock_timeout=0.01)
        await store.create("a_swap", "a", 2)

        async with store.lock("a_swap"):
            with pytest.raises(SwapCoordinationError, match="Could not acquire mutex"):
                await store.decrement("a_swap", AsyncMock())

        counter = await store.load("a_swap")
        assert counter is not None and counter.remaining == 2


# ── Redis store ──────────────────────────────────────────────────────────────


def _redis_client(lock_acquired: bool = True) -> MagicMock:
    """Redis client double keeping values in a dict."""
    data: dict[str, str] = {}
    client = MagicMock()

    async def get(key: str) -> str | None:
        return data.get(key)

    async def set_(key: str, value: str, ex: int | None = None) -> None:
        data[key] = value

    async def delete(key: str) -> None:
        data.pop(key, None)

    client.get = AsyncMock(side_effect=get)
    client.set = AsyncMock(side_effect=set_)
    client.delete = AsyncMock(side_effect=delete)
    mutex = MagicMock()
    mutex.acquire = AsyncMock(return_value=lock_acquired)
    mutex.release = AsyncMock()
    client.lock.return_value = mutex
    client.data = data
    return client


class TestRedisSwapCounterStore:
    async def test_create_writes_json_with_ttl(self) -> None:
        client = _redis_client()
        store = RedisSwapCounterStore(client, counter_ttl=600)

        await store.create("a_swap", "a", 4)

        key = "searchIndex:swapPending:a_swap"
        assert json.loads(client.data[key]) == {"swap_handle": "a_swap", "index_handle": "a", "remaining": 4}
        assert client.set.await_args.kwargs["ex"] == 600
        client.lock.assert_called_with("searchIndex:swapLock:a_swap", timeout=60.0, blocking_timeout=10.0)

    async def test_decrement_to_zero(self) -> None:
        client = _redis_client()
        store = RedisSwapCounterStore(client)
        on_zero = AsyncMock()
        await store.create("a_swap", "a", 2)

        assert await store.decrement("a_swap", on_zero) is False
        assert await store.decrement("a_swap", on_zero) is True
        on_zero.assert_awaited_once()
        assert "searchIndex:swapPending:a_swap" not in client.data

    async def test_lock_not_acquired(self) -> None:
        store = RedisSwapCounterStore(_redis_client(lock_acquired=False))
        with pytest.raises(SwapCoordinationError, match="a_swap"):
            await store.decrement("a_swap", AsyncMock())

    async def test_redis_error_becomes_coordination_error(self) -> None:
        client = _redis_client()
        client.get = AsyncMock(side_effect=RedisError("connection reset"))
        store = RedisSwapCounterStore(client)
        with pytest.raises(SwapCoordinationError, match="connection reset"):
            await store.decrement("a_swap", AsyncMock())

    async def test_expired_lock_on_release_is_logged(self) -> None:
        client = _redis_client()
        client.lock.return_value.release = AsyncMock(side_effect=LockError("expired"))
        store = RedisSwapCounterStore(client)
        await store.create("a_swap", "a", 2)
        assert await store.decrement("a_swap", AsyncMock()) is False


# ── Factory ──────────────────────────────────────────────────────────────────


class TestBuildCounterStore:
    def test_memory_default(self) -> None:
        store = build_counter_store(SyncSettings(lock_timeout=3))
        assert isinstance(store, MemorySwapCounterStore)
        assert store.lock_timeout == 3

    def test_redis_requires_connection(self) -> None:
        with pytest.raises(ConfigurationError, match="no Redis cache connection"):
            build_counter_store(SyncSettings(counter_backend="redis"), CacheManager())

    def test_redis_uses_cache_client(self) -> None:
        cache = CacheManager()
        cache.settings.backend = "redis"
        cache._client = _redis_client()
        store = build_counter_store(SyncSettings(counter_backend="redis"), cache)
        assert isinstance(store, RedisSwapCounterStore)

    def test_unknown_backend(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown swap counter backend"):
            build_counter_store(SyncSettings(counter_backend="etcd"))
