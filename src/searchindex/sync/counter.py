"""Swap counter — Coordinates the last batch of a full refresh.

A refresh into a temporary index schedules N batch tasks and stores a
counter set to N under ``searchIndex:swapPending:{swapHandle}``.  Every
batch decrements it under a mutex scoped to that swap handle, so refreshes
of different indexes never contend.  The decrement that reaches zero
deletes the counter and enqueues the swap; if that enqueue fails the
counter is put back at 1 so a retried decrement can try again.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from searchindex.engines.base.exceptions import ConfigurationError, SwapCoordinationError

if TYPE_CHECKING:
    from searchindex.cache.manager import CacheManager
    from searchindex.config.settings import SyncSettings

logger = logging.getLogger(__name__)

COUNTER_PREFIX = "searchIndex:swapPending:"
LOCK_PREFIX = "searchIndex:swapLock:"


@dataclass
class SwapCounter:
    """Pending batches of one refresh."""

    swap_handle: str
    index_handle: str
    remaining: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SwapCounter:
        return cls(
            swap_handle=str(data["swap_handle"]),
            index_handle=str(data["index_handle"]),
            remaining=int(data["remaining"]),
        )


def counter_key(swap_handle: str) -> str:
    return f"{COUNTER_PREFIX}{swap_handle}"


def _lock_failed(swap_handle: str) -> SwapCoordinationError:
    return SwapCoordinationError(f"Could not acquire mutex for swap counter '{swap_handle}'")


class SwapCounterStore(ABC):
    """Keyed counter store with a mutex-guarded compare-and-decrement.

    Args:
        lock_timeout: Seconds to wait for the per-handle mutex before
            raising :class:`SwapCoordinationError`.
    """

    def __init__(self, lock_timeout: float = 10.0) -> None:
        self.lock_timeout = lock_timeout

    @abstractmethod
    async def load(self, swap_handle: str) -> SwapCounter | None:
        """Read a counter; ``None`` when there is none."""

    @abstractmethod
    async def save(self, counter: SwapCounter) -> None:
        """Write a counter unconditionally."""

    @abstractmethod
    async def delete(self, swap_handle: str) -> None:
        """Remove a counter if present."""

    @abstractmethod
    def lock(self, swap_handle: str) -> Any:
        """Async context manager holding the mutex for ``swap_handle``.

        Raises:
            SwapCoordinationError: If the mutex cannot be acquired.
        """

    async def create(self, swap_handle: str, index_handle: str, remaining: int) -> SwapCounter:
        """Start (or restart) the countdown for a refresh."""
        counter = SwapCounter(swap_handle=swap_handle, index_handle=index_handle, remaining=remaining)
        async with self.lock(swap_handle):
            await self.save(counter)
        logger.debug("Swap counter for %s set to %d", swap_handle, remaining)
        return counter

    async def decrement(
        self,
        swap_handle: str,
        on_zero: Callable[[SwapCounter], Awaitable[None]],
    ) -> bool:
        """Decrement the counter; run ``on_zero`` once it reaches zero.

        Args:
            swap_handle: Handle of the temporary index.
            on_zero: Called inside the mutex with the exhausted counter,
                after the counter was deleted.

        Returns:
            True if this call observed zero and ``on_zero`` succeeded.

        Raises:
            SwapCoordinationError: If the mutex cannot be acquired.
            Exception: Whatever ``on_zero`` raised; the counter is restored
                to 1 first.
        """
        async with self.lock(swap_handle):
            counter = await self.load(swap_handle)
            if counter is None:
                logger.warning("No pending swap counter for %s; nothing to decrement", swap_handle)
                return False

            counter.remaining -= 1
            if counter.remaining > 0:
                await self.save(counter)
                logger.debug("Swap counter for %s now %d", swap_handle, counter.remaining)
                return False

            await self.delete(swap_handle)
            try:
                await on_zero(counter)
            except Exception:
                counter.remaining = 1
                await self.save(counter)
                logger.error("Swap follow-up for %s failed; counter restored to 1", swap_handle)
                raise
            return True


class MemorySwapCounterStore(SwapCounterStore):
    """In-process store guarded by one ``asyncio.Lock`` per swap handle.

    A handle's lock lives only while some caller holds or awaits it.
    """

    def __init__(self, lock_timeout: float = 10.0) -> None:
        super().__init__(lock_timeout)
        self._counters: dict[str, SwapCounter] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def load(self, swap_handle: str) -> SwapCounter | None:
        counter = self._counters.get(swap_handle)
        return SwapCounter(**counter.to_dict()) if counter else None

    async def save(self, counter: SwapCounter) -> None:
        self._counters[counter.swap_handle] = SwapCounter(**counter.to_dict())

    async def delete(self, swap_handle: str) -> None:
        self._counters.pop(swap_handle, None)

    @asynccontextmanager
    async def lock(self, swap_handle: str) -> AsyncIterator[None]:
        mutex = self._locks.setdefault(swap_handle, asyncio.Lock())
        self._lock_users[swap_handle] = self._lock_users.get(swap_handle, 0) + 1
        try:
            try:
                await asyncio.wait_for(mutex.acquire(), timeout=self.lock_timeout)
            except TimeoutError as e:
                raise _lock_failed(swap_handle) from e
            try:
                yield
            finally:
                mutex.release()
        finally:
            self._lock_users[swap_handle] -= 1
            if not self._lock_users[swap_handle]:
                del self._lock_users[swap_handle]
                del self._locks[swap_handle]


class RedisSwapCounterStore(SwapCounterStore):
    """Store shared between worker processes through Redis.

    Counters are JSON strings with a TTL so an abandoned refresh does not
    leave a key behind forever.  The mutex is a ``redis.asyncio`` lock named
    after the swap handle.

    Args:
        client: A ``redis.asyncio.Redis`` client (``decode_responses=True``).
        lock_timeout: Seconds to wait for the lock.
        lock_ttl: Seconds after which a held lock expires on its own.
        counter_ttl: Lifetime of a counter key.
    """

    def __init__(
        self,
        client: Any,
        lock_timeout: float = 10.0,
        lock_ttl: float = 60.0,
        counter_ttl: int = 86400,
    ) -> None:
        super().__init__(lock_timeout)
        self._client = client
        self._lock_ttl = lock_ttl
        self._counter_ttl = counter_ttl

    async def load(self, swap_handle: str) -> SwapCounter | None:
        from redis.exceptions import RedisError

        try:
            raw = await self._client.get(counter_key(swap_handle))
        except RedisError as e:
            raise SwapCoordinationError(f"Could not read swap counter '{swap_handle}': {e}") from e
        return SwapCounter.from_dict(json.loads(raw)) if raw else None

    async def save(self, counter: SwapCounter) -> None:
        from redis.exceptions import RedisError

        try:
            await self._client.set(
                counter_key(counter.swap_handle),
                json.dumps(counter.to_dict()),
                ex=self._counter_ttl,
            )
        except RedisError as e:
            raise SwapCoordinationError(f"Could not write swap counter '{counter.swap_handle}': {e}") from e

    async def delete(self, swap_handle: str) -> None:
        from redis.exceptions import RedisError

        try:
            await self._client.delete(counter_key(swap_handle))
        except RedisError as e:
            raise SwapCoordinationError(f"Could not delete swap counter '{swap_handle}': {e}") from e

    @asynccontextmanager
    async def lock(self, swap_handle: str) -> AsyncIterator[None]:
        from redis.exceptions import LockError, RedisError

        mutex = self._client.lock(
            f"{LOCK_PREFIX}{swap_handle}",
            timeout=self._lock_ttl,
            blocking_timeout=self.lock_timeout,
        )
        try:
            acquired = await mutex.acquire()
        except RedisError as e:
            raise _lock_failed(swap_handle) from e
        if not acquired:
            raise _lock_failed(swap_handle)
        try:
            yield
        finally:
            try:
                await mutex.release()
            except LockError:
                logger.warning("Swap counter lock for %s expired before release", swap_handle)


def build_counter_store(settings: SyncSettings, cache: CacheManager | None = None) -> SwapCounterStore:
    """Create the store selected by ``sync.counter_backend``.

    The Redis store reuses the cache manager's connection, so the cache
    must be initialised with the ``redis`` backend.
    """
    if settings.counter_backend == "redis":
        client = cache.redis if cache is not None else None
        if client is None:
            raise ConfigurationError("sync.counter_backend is 'redis' but no Redis cache connection is available")
        return RedisSwapCounterStore(client, lock_timeout=settings.lock_timeout)
    if settings.counter_backend != "memory":
        raise ConfigurationError(f"Unknown swap counter backend: {settings.counter_backend}")
    return MemorySwapCounterStore(lock_timeout=settings.lock_timeout)
