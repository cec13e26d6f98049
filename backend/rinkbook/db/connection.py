"""
Shared Redis connection used by every datastore-facing service.
"""

import logging
from typing import Optional
import redis.asyncio as redis

from rinkbook.config import settings

logger = logging.getLogger(__name__)


class RedisConnection:
    """Lazily creates one Redis client per process."""

    def __init__(self):
        self._redis: Optional[redis.Redis] = None

    async def get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(settings.get_redis_url(), decode_responses=True)
        return self._redis

    def use(self, client: redis.Redis) -> None:
        """Swap in an already-built client (tests, embedded callers)."""
        self._redis = client

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None


# Global connection instance
redis_connection = RedisConnection()
