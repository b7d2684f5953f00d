"""
Fixed-window rate limiter for the Users Service.

Counts requests per client in Redis with ``RedisCache.increment``; the
counter's expiry is set on the first hit of each window. When Redis is
unavailable requests are let through.
"""

from typing import Dict, Any

from shared.errors import UpstreamUnavailableError
from shared.logging import get_logger
from ..cache.redis_cache import RedisCache

RATE_LIMIT_PREFIX = "rate_limit:"


class FixedWindowRateLimiter:
    """Allow ``limit`` requests per client per ``window_seconds``."""

    def __init__(self, cache: RedisCache, limit: int = 100, window_seconds: int = 60):
        self.cache = cache
        self.limit = limit
        self.window_seconds = window_seconds
        self.logger = get_logger("users.rate_limiter")

    def _make_key(self, client_id: str) -> str:
        return f"{RATE_LIMIT_PREFIX}{client_id}"

    async def check_rate_limit(self, client_id: str) -> Dict[str, Any]:
        """Count this request and report whether it is within the limit."""
        try:
            count = await self.cache.increment(self._make_key(client_id), self.window_seconds)
        except UpstreamUnavailableError as e:
            self.logger.warning("Rate limit check skipped", client_id=client_id, error=e.message)
            return {
                "allowed": True,
                "current_count": 0,
                "limit": self.limit,
                "remaining": self.limit,
                "error": "Redis unavailable"
            }

        if count > self.limit:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                current_count=count,
                limit=self.limit
            )
            return {
                "allowed": False,
                "current_count": count,
                "limit": self.limit,
                "remaining": 0,
                "retry_after": self.window_seconds
            }

        return {
            "allowed": True,
            "current_count": count,
            "limit": self.limit,
            "remaining": self.limit - count
        }
