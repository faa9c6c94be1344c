"""Redis caching layer.

Cached values are derived from the catalog, so every key embeds the catalog
cache version: a refresh makes old entries unreachable without a flush.
"""

import json
import logging
from typing import Any

import redis.asyncio as redis

from peek.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class CacheService:
    """Async Redis cache service. A disabled cache misses on every read."""

    def __init__(self, enabled: bool | None = None):
        self._redis: redis.Redis | None = None
        self.enabled = settings.cache_enabled if enabled is None else enabled

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def get(self, key: str) -> Any | None:
        """Get value from cache."""
        if not self.enabled:
            return None
        try:
            client = await self._get_redis()
            value = await client.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Cache get error for {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> bool:
        """Set value in cache. Defaults to the configured TTL."""
        if not self.enabled:
            return False
        try:
            client = await self._get_redis()
            await client.setex(key, ttl or settings.cache_ttl_seconds, json.dumps(value))
            return True
        except Exception as e:
            logger.warning(f"Cache set error for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        if not self.enabled:
            return False
        try:
            client = await self._get_redis()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Cache delete error for {key}: {e}")
            return False

    async def flush_pattern(self, pattern: str) -> int:
        """Delete all keys matching a pattern. Returns count of deleted keys."""
        if not self.enabled:
            return 0
        try:
            client = await self._get_redis()
            deleted = 0
            async for key in client.scan_iter(match=pattern, count=500):
                await client.delete(key)
                deleted += 1
            return deleted
        except Exception as e:
            logger.warning(f"Cache flush_pattern error for {pattern}: {e}")
            return 0

    # Key patterns for different data types
    @staticmethod
    def canonical_mapping_key(kind: str, version: int) -> str:
        return f"dedup:canonical:{kind}:v{version}"

    @staticmethod
    def user_stats_key(user_id: int, version: int, sort_by: str) -> str:
        return f"user:stats:{user_id}:v{version}:{sort_by}"

    @staticmethod
    def user_stats_pattern(user_id: int) -> str:
        return f"user:stats:{user_id}:*"


# Singleton cache instance
_cache: CacheService | None = None


def get_cache() -> CacheService:
    """Get the singleton cache service."""
    global _cache
    if _cache is None:
        _cache = CacheService()
    return _cache
