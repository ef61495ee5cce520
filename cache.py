"""
TDX Gateway Cache Layer
In-memory TTL cache for normalized TDX responses (single process).
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class TTLCache:
    """
    In-memory key/value cache with per-entry TTL and a size cap.

    Used when REDIS_URL is not configured. When full, the oldest entry is
    evicted. Values are stored as given; callers store plain dicts.
    """

    def __init__(self, ttl_seconds: int = 300, max_size: int = 1000, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize empty cache with hit/miss counters."""
        self._clock = clock
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._hits: int = 0
        self._misses: int = 0

    async def connect(self) -> None:
        logger.info(f"In-memory cache ready (ttl={self.ttl_seconds}s, max_size={self.max_size})")

    async def disconnect(self) -> None:
        self._entries.clear()

    async def get(self, key: str) -> tuple[Optional[Any], bool]:
        """
        Retrieve cached value if present and not expired.

        Returns:
            (value, is_hit)
        """
        entry = self._entries.get(key)
        if entry is not None:
            expires_at, value = entry
            if self._clock() < expires_at:
                self._hits += 1
                return value, True
            del self._entries[key]
            logger.debug(f"Cache EXPIRED: {key}")

        self._misses += 1
        return None, False

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store a value with the default or given TTL."""
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            self._evict()
        self._entries[key] = (self._clock() + ttl, value)
        logger.debug(f"Cache SET: {key}")

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def clear(self, prefix: str = "") -> int:
        """Remove all entries (or those starting with prefix). Returns count removed."""
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        logger.info(f"Cleared {len(keys)} cache entries")
        return len(keys)

    def _evict(self) -> None:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        if len(self._entries) >= self.max_size:
            key, _ = self._entries.popitem(last=False)
            logger.debug(f"Cache EVICTED: {key}")

    async def stats(self) -> dict:
        """Return cache statistics for monitoring."""
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0

        return {
            "backend": "memory",
            "total_requests": total,
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "hit_rate_percent": round(hit_rate, 2),
            "stored_items": len(self._entries),
        }
