"""Redis async connection pool (only when ``REDIS_URL`` is configured)."""

from typing import Optional

import redis.asyncio as aioredis

from carpool.config import settings

_pool = (
    aioredis.ConnectionPool.from_url(settings.redis_url, decode_responses=True)
    if settings.redis_url
    else None
)


def get_redis() -> Optional[aioredis.Redis]:
    """Return a Redis client backed by the shared pool, or None without Redis."""
    if _pool is None:
        return None
    return aioredis.Redis(connection_pool=_pool)
