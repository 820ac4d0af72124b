"""Cache Manager — Redis-backed caching for embeddings and sync state.

Provides a unified caching interface with a memory or Redis backend and
configurable TTLs.  Cache failures never fail the caller: a miss is
returned instead and the error is logged at debug level.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from redis.exceptions import RedisError

from searchindex.config.settings import CacheSettings

logger = logging.getLogger(__name__)

# Backend failures and values that do not survive a JSON round-trip.
_CACHE_ERRORS = (RedisError, OSError, TypeError, ValueError)


class CacheManager:
    """Manages caching for searchindex components.

    Supports Redis and in-memory backends.  The memory backend honours
    TTLs lazily (expired entries are dropped when read).

    Attributes:
        settings: Cache configuration.
    """

    def __init__(self, settings: CacheSettings | None = None) -> None:
        self.settings = settings or CacheSettings()
        self._client: Any = None
        self._memory_cache: dict[str, tuple[Any, float | None]] = {}

    async def initialize(self) -> None:
        """Initialize the cache backend."""
        if self.settings.backend == "redis":
            import redis.asyncio as aioredis

            try:
                self._client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
                await self._client.ping()
                logger.info("Connected to Redis cache at %s", self.settings.redis_url)
            except (RedisError, OSError):
                logger.warning("Failed to connect to Redis, falling back to memory cache", exc_info=True)
                self._client = None
                self.settings.backend = "memory"
        else:
            logger.info("Using in-memory cache backend")

    async def shutdown(self) -> None:
        """Close cache connections."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def redis(self) -> Any:
        """The live ``redis.asyncio`` client, or ``None`` on the memory backend."""
        return self._client if self.settings.backend == "redis" else None

    async def get(self, key: str) -> Any | None:
        """Retrieve a value from cache.

        Args:
            key: Cache key.

        Returns:
            Cached value or None if not found or expired.
        """
        if self.redis is None:
            return self._memory_get(key)
        try:
            raw = await self._client.get(key)
            return json.loads(raw) if raw else None
        except _CACHE_ERRORS:
            logger.debug("Cache miss on error for key: %s", key, exc_info=True)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store a value in cache.

        Args:
            key: Cache key.
            value: Value to cache (must be JSON-serializable for Redis).
            ttl: Time-to-live in seconds (None = no expiry).
        """
        if self.redis is None:
            self._memory_cache[key] = (value, time.monotonic() + ttl if ttl else None)
            return
        try:
            payload = json.dumps(value, default=str)
            if ttl:
                await self._client.setex(key, ttl, payload)
            else:
                await self._client.set(key, payload)
        except _CACHE_ERRORS:
            logger.debug("Cache write skipped for key: %s", key, exc_info=True)

    async def delete(self, key: str) -> None:
        """Delete a value from cache."""
        if self.redis is None:
            self._memory_cache.pop(key, None)
            return
        try:
            await self._client.delete(key)
        except _CACHE_ERRORS:
            logger.debug("Cache delete failed for key: %s", key, exc_info=True)

    def _memory_get(self, key: str) -> Any | None:
        entry = self._memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._memory_cache[key]
            return None
        return value
