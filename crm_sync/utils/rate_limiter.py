"""Rate limiting utilities using Redis."""

import redis.asyncio as redis
import time
import uuid


class RateLimiter:
    """Sliding-window rate limiter backed by a Redis sorted set."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "rate_limit"):
        self.redis_client = redis_client
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str, prefix: str = "rate_limit") -> "RateLimiter":
        """Build a limiter with its own Redis connection."""
        return cls(redis.from_url(redis_url, decode_responses=True), prefix=prefix)

    async def check_rate_limit(
        self,
        key: str,
        limit: int = 100,
        window: int = 3600,
    ) -> bool:
        """Record a call and return False if the window is already full."""
        full_key = f"{self.prefix}:{key}"
        current_time = time.time()
        window_start = current_time - window

        # Remove old entries
        await self.redis_client.zremrangebyscore(full_key, 0, window_start)

        count = await self.redis_client.zcard(full_key)
        if count >= limit:
            return False

        await self.redis_client.zadd(full_key, {uuid.uuid4().hex: current_time})
        await self.redis_client.expire(full_key, max(1, int(window)))

        return True

    async def get_remaining_requests(
        self,
        key: str,
        limit: int = 100,
        window: int = 3600,
    ) -> int:
        """Get remaining requests in current window."""
        full_key = f"{self.prefix}:{key}"
        window_start = time.time() - window

        await self.redis_client.zremrangebyscore(full_key, 0, window_start)
        count = await self.redis_client.zcard(full_key)

        return max(0, limit - count)

    async def reset_rate_limit(self, key: str) -> None:
        """Reset rate limit for a key."""
        await self.redis_client.delete(f"{self.prefix}:{key}")
