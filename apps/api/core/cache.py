"""
Redis connection management.

Redis backs the recompute debounce keys, the pending-recompute set and the
HTTP rate limiter. Every caller degrades gracefully if Redis is unavailable.
"""
import logging
from typing import Optional
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        # Test connection
        _redis_client.ping()
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Debounce and rate limiting degraded.")
        _redis_client = None
        return None


def cache_key(prefix: str, *args) -> str:
    """Build a namespaced key from a prefix and non-None parts."""
    return ":".join([prefix] + [str(arg) for arg in args if arg is not None])
