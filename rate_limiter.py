"""
Rate Limiter - token bucket per client, Redis-backed or in-process.

Limits calls to /api/* per client IP (default 100 requests per 15 minutes).
With REDIS_URL set the buckets live in Redis so every gateway instance shares
them; otherwise each process keeps its own buckets.

If Redis errors, the request is allowed (fail-open).
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class TokenBucketRateLimiter:
    """
    Token bucket rate limiter.

    Each client has a bucket of max_requests tokens that refills at
    max_requests / window_seconds tokens per second. A request consumes one
    token; an empty bucket means 429.

    Redis keys:
    - `{prefix}{client}:count` = current token count
    - `{prefix}{client}:reset` = timestamp of last refill
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        max_requests: int = 100,
        window_seconds: int = 900,
        key_prefix: str = "tdx-gateway:ratelimit:"
    ):
        """
        Args:
            redis_client: Redis connection (shared with cache), or None for in-process buckets
            max_requests: Max requests per window (bucket capacity)
            window_seconds: Time window in seconds
            key_prefix: Redis key prefix for rate limit data
        """
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self.refill_rate = max_requests / window_seconds
        self._buckets: dict[str, tuple[float, float]] = {}
        self._last_sweep = time.time()

    def _refill(self, tokens: Optional[float], last_reset: Optional[float], now: float) -> float:
        if tokens is None:
            return float(self.max_requests)
        elapsed = now - (last_reset if last_reset is not None else now)
        return min(self.max_requests, tokens + elapsed * self.refill_rate)

    def _sweep(self, now: float) -> None:
        """Forget in-process buckets that have refilled to capacity (same as never seen)."""
        full = [
            client_id for client_id, (tokens, last_reset) in self._buckets.items()
            if self._refill(tokens, last_reset, now) >= self.max_requests
        ]
        for client_id in full:
            del self._buckets[client_id]
        self._last_sweep = now
        if full:
            logger.debug(f"Rate limiter dropped {len(full)} idle buckets")

    def _decide(self, current_tokens: float, now: float) -> tuple[bool, float, dict]:
        if current_tokens >= 1.0:
            new_tokens = current_tokens - 1.0
            return True, new_tokens, {
                "remaining": int(new_tokens),
                "reset_at": int(now + (self.max_requests - new_tokens) / self.refill_rate),
                "limit": self.max_requests
            }

        time_until_token = (1.0 - current_tokens) / self.refill_rate
        return False, current_tokens, {
            "remaining": 0,
            "reset_at": int(now + time_until_token),
            "limit": self.max_requests
        }

    async def check_rate_limit(self, client_id: str) -> tuple[bool, dict]:
        """
        Consume one token for client_id if available.

        Returns:
            (allowed, {"remaining": int, "reset_at": int, "limit": int})
        """
        now = time.time()

        if not self.redis:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            tokens, last_reset = self._buckets.get(client_id, (None, None))
            allowed, new_tokens, info = self._decide(self._refill(tokens, last_reset, now), now)
            if allowed:
                self._buckets[client_id] = (new_tokens, now)
            return allowed, info

        try:
            count_key = f"{self.key_prefix}{client_id}:count"
            reset_key = f"{self.key_prefix}{client_id}:reset"

            pipe = self.redis.pipeline()
            pipe.get(count_key)
            pipe.get(reset_key)
            results = await pipe.execute()

            tokens = float(results[0]) if results[0] else None
            last_reset = float(results[1]) if results[1] else None
            allowed, new_tokens, info = self._decide(self._refill(tokens, last_reset, now), now)

            if allowed:
                pipe = self.redis.pipeline()
                pipe.set(count_key, str(new_tokens), ex=self.window_seconds * 2)
                pipe.set(reset_key, str(now), ex=self.window_seconds * 2)
                await pipe.execute()

            return allowed, info

        except (redis.RedisError, ValueError) as e:
            logger.error(f"Rate limiter error: {e}, failing open")
            return True, {"remaining": self.max_requests, "reset_at": 0, "limit": self.max_requests}

    async def reset_limit(self, client_id: str) -> None:
        """Reset the bucket for one client (admin/testing)."""
        self._buckets.pop(client_id, None)
        if not self.redis:
            return

        try:
            await self.redis.delete(f"{self.key_prefix}{client_id}:count", f"{self.key_prefix}{client_id}:reset")
            logger.info(f"Rate limit reset for client: {client_id}")
        except redis.RedisError as e:
            logger.error(f"Error resetting rate limit: {e}")
