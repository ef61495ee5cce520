"""TDX Gateway Redis Cache Layer - shared response cache across gateway instances."""

import json
import logging
import os
from typing import Any, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisCache:
    """Redis-backed cache for normalized TDX responses, stored as JSON with TTL."""

    def __init__(self, redis_url: str | None = None, ttl_seconds: int = 300, key_prefix: str = "tdx-gateway:cache:") -> None:
        """Initialize Redis cache with URL, TTL, and key prefix."""
        self.redis_url = redis_url or os.getenv("REDIS_URL")
        if not self.redis_url:
            raise ValueError("Redis URL required. Set REDIS_URL env var or pass redis_url parameter.")
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.client: Optional[redis.Redis] = None
        self._hits = 0
        self._misses = 0

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            self.client = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
            await self.client.ping()
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            raise

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> tuple[Optional[Any], bool]:
        """Retrieve cached value. Returns (value, is_hit)."""
        if not self.client:
            self._misses += 1
            return None, False

        try:
            raw = await self.client.get(self._make_key(key))
            if raw:
                self._hits += 1
                return json.loads(raw), True
            self._misses += 1
            return None, False
        except (redis.RedisError, ValueError) as e:
            # A broken cache read is treated as a miss
            logger.error(f"Redis GET error: {e}")
            self._misses += 1
            return None, False

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store a JSON-serializable value with TTL."""
        if not self.client:
            return

        try:
            ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
            await self.client.setex(self._make_key(key), ttl, json.dumps(value))
        except (redis.RedisError, TypeError) as e:
            logger.error(f"Redis SET error: {e}")

    async def delete(self, key: str) -> bool:
        if not self.client:
            return False
        try:
            return bool(await self.client.delete(self._make_key(key)))
        except redis.RedisError as e:
            logger.error(f"Redis DELETE error: {e}")
            return False

    async def stats(self) -> dict:
        """Return cache statistics: total requests, hits, misses, hit rate, stored items."""
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0

        stored_items = 0
        if self.client:
            try:
                pattern = f"{self.key_prefix}*"
                cursor = 0
                while True:
                    cursor, keys = await self.client.scan(cursor, match=pattern, count=100)
                    stored_items += len(keys)
                    if cursor == 0:
                        break
            except redis.RedisError as e:
                logger.error(f"Error counting Redis keys: {e}")

        return {"backend": "redis", "total_requests": total, "cache_hits": self._hits, "cache_misses": self._misses, "hit_rate_percent": round(hit_rate, 2), "stored_items": stored_items}

    async def clear(self, prefix: str = "") -> int:
        """Clear cached entries (optionally only keys starting with prefix). Returns number of keys deleted."""
        if not self.client:
            return 0

        try:
            pattern = f"{self.key_prefix}{prefix}*"
            cursor = 0
            deleted = 0

            while True:
                cursor, keys = await self.client.scan(cursor, match=pattern, count=100)
                if keys:
                    deleted += await self.client.delete(*keys)
                if cursor == 0:
                    break

            logger.info(f"Cleared {deleted} cache entries")
            return deleted
        except redis.RedisError as e:
            logger.error(f"Error clearing cache: {e}")
            return 0

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.client:
            await self.client.aclose()
            logger.info("Redis connection closed")
