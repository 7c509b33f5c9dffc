"""
SealPay SDK - Settlement Status Cache
Redis cache that throttles status polls against the settlement backend.

Only "still pending" observations are cached, and only the status endpoint
reads them. Key release always asks the backend.
"""

import os
import logging
from typing import Optional

import redis.asyncio as aioredis

logger = logging.getLogger("sealpay.cache")


class SettlementCache:
    """
    Short-lived memory of recent pending polls, keyed by content id.

    Caching is optional: without a reachable Redis every call is a no-op
    and every status query goes to the backend.

    Example:
        cache = SettlementCache("redis://localhost:6379/0", ttl=5)
        await cache.init_cache()

        if not await cache.recently_pending(content_id):
            settlement = await oracle.poll_settlement(intent)
    """

    CACHE_PREFIX = "cache:settlement:"

    def __init__(self, redis_url: str = None, ttl: int = None):
        """
        Args:
            redis_url: Redis connection URL (default from REDIS_URL env)
            ttl: Seconds a pending observation stays valid
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL", "")
        self.ttl = ttl or int(os.getenv("STATUS_CACHE_TTL_SECONDS", "5"))

        self._redis: Optional[aioredis.Redis] = None
        self._cache_enabled = False

    @property
    def enabled(self) -> bool:
        return self._cache_enabled

    async def init_cache(self) -> bool:
        """
        Connect to Redis.

        Returns:
            True if Redis connected successfully, False otherwise
        """
        if not self.redis_url:
            logger.info("REDIS_URL not set - status cache disabled")
            return False

        try:
            self._redis = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._redis.ping()
            self._cache_enabled = True
            logger.info(f"Redis cache connected: {self.redis_url} (TTL {self.ttl}s)")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}")
            self._cache_enabled = False
            return False

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._cache_enabled = False

    def _get_cache_key(self, content_id: str) -> str:
        return f"{self.CACHE_PREFIX}{content_id}"

    async def recently_pending(self, content_id: str) -> bool:
        if not self._cache_enabled:
            return False

        try:
            hit = await self._redis.get(self._get_cache_key(content_id))
            logger.debug(f"Cache {'HIT' if hit else 'MISS'}: {content_id[:12]}...")
            return hit is not None
        except Exception as e:
            logger.warning(f"Cache read error: {e}")
            return False

    async def remember_pending(self, content_id: str):
        if not self._cache_enabled:
            return

        try:
            await self._redis.setex(self._get_cache_key(content_id), self.ttl, "pending")
        except Exception as e:
            logger.warning(f"Cache write error: {e}")

    async def invalidate(self, content_id: str):
        if not self._cache_enabled:
            return

        try:
            await self._redis.delete(self._get_cache_key(content_id))
        except Exception as e:
            logger.warning(f"Cache invalidation error: {e}")

    async def get_cache_stats(self) -> dict:
        if not self._cache_enabled:
            return {"enabled": False, "reason": "Redis not connected"}

        try:
            info = await self._redis.info("memory")
            keys_count = 0
            async for _ in self._redis.scan_iter(f"{self.CACHE_PREFIX}*"):
                keys_count += 1

            return {
                "enabled": True,
                "ttl_seconds": self.ttl,
                "pending_entries": keys_count,
                "redis_memory_used": info.get("used_memory_human", "unknown")
            }
        except Exception as e:
            return {"enabled": True, "error": str(e)}
