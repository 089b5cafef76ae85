"""
Cross-process training lock

One Redis key per user marks a training run in flight, so API processes and
Celery workers refuse a second run for the same user. The key expires on its
own if the holder dies mid-run.

Fails open when Redis is unavailable: the in-process registry is then the
only guard.
"""

import logging

from redis.exceptions import RedisError

from core.cache import get_redis_client

logger = logging.getLogger(__name__)

# Longer than the training task's hard time limit
LOCK_TTL_S = 900


def _lock_key(user_id: str) -> str:
    return f"risk_training_lock:{user_id}"


def acquire_training_lock(user_id: str) -> bool:
    """
    Acquire the in-flight lock for this user's training run.
    Returns True if acquired, False if another process already holds it.
    """
    r = get_redis_client()
    if not r:
        return True  # fail open

    try:
        acquired = r.set(_lock_key(user_id), "1", nx=True, ex=LOCK_TTL_S)
    except RedisError as e:
        logger.warning(f"Training lock unavailable for user {user_id}: {e}")
        return True  # fail open
    return bool(acquired)


def release_training_lock(user_id: str) -> None:
    """Release the in-flight lock after the run completes."""
    r = get_redis_client()
    if not r:
        return
    try:
        r.delete(_lock_key(user_id))
    except RedisError as e:
        logger.warning(f"Could not release training lock for user {user_id}: {e}")


def training_lock_held(user_id: str) -> bool:
    r = get_redis_client()
    if not r:
        return False
    try:
        return bool(r.exists(_lock_key(user_id)))
    except RedisError:
        return False
