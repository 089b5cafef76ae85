"""
Redis connection

Shared client for cross-process coordination (training locks). Degrades
gracefully: callers get None when Redis is not configured or unreachable.
"""
import logging
from typing import Optional

import redis
from redis.exceptions import RedisError

from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    if not settings.REDIS_URL:
        return None

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        # Test connection
        client.ping()
    except RedisError as e:
        logger.warning(f"Redis unavailable: {e}. Cross-process training locks disabled.")
        return None

    logger.info("Redis connection established")
    _redis_client = client
    return _redis_client
