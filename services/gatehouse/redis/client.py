"""
Redis client management for the Gatehouse auth broker.

Only used when ``auth.store_backend`` is ``redis``: the state, nonce and
session stores share one connection pool, opened in the app lifespan.
"""

import redis.asyncio as aioredis

from gatehouse.config import settings
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)

# Module-level client reference, initialized in lifespan
_redis: aioredis.Redis | None = None


async def init_redis() -> None:
    """Initialize Redis connection pool."""
    global _redis  # noqa: PLW0603
    logger.info("Initializing Redis connection")
    _redis = aioredis.from_url(
        str(settings.redis_url),
        decode_responses=True,
    )
    await _redis.ping()
    logger.info("Redis connection established")


async def close_redis() -> None:
    """Close Redis connection pool."""
    global _redis  # noqa: PLW0603
    if _redis is not None:
        logger.info("Closing Redis connection pool")
        await _redis.aclose()
        _redis = None


def get_redis_client() -> aioredis.Redis:
    """Return the Redis client. Raises if not initialized."""
    if _redis is None:
        raise RuntimeError("Redis client not initialized, call init_redis() first")
    return _redis


async def get_redis_health() -> bool:
    """Check Redis health for readiness probe."""
    try:
        if _redis is None:
            return False
        await _redis.ping()
        return True
    except aioredis.RedisError as e:
        logger.error("Redis health check failed", error=str(e))
        return False
