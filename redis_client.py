import logging

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

_redis_pool: aioredis.Redis | None = None


def get_redis(redis_url: str) -> aioredis.Redis | None:
    """Shared connection pool, or None when no Redis URL is configured."""
    global _redis_pool
    if not redis_url:
        return None
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None
