"""
Shared Redis connection for the Redis-backed dialogue session store.

``get_redis()`` returns None while Redis is unreachable; callers fall
back to in-process state rather than failing the request.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from counselbot.config import settings

logger = logging.getLogger(__name__)

# Every key written by counselbot starts with this
APP_PREFIX = "counselbot:v1:"

_redis: Optional[Redis] = None


def _connect() -> Redis:
    return redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5.0,
        socket_timeout=5.0,
        retry_on_timeout=True,
        retry=Retry(ExponentialBackoff(), retries=3),
    )


async def get_redis() -> Optional[Redis]:
    """Connected client, or None if Redis cannot be reached."""
    global _redis
    if _redis is not None:
        return _redis

    client = _connect()
    try:
        await client.ping()
    except RedisError as e:
        logger.error(f"Redis unavailable at {settings.redis_url}: {e}")
        await client.aclose()
        return None

    logger.info("Connected to Redis")
    _redis = client
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is None:
        return
    try:
        await _redis.aclose()
    except RedisError as e:
        logger.warning(f"Error closing Redis connection: {e}")
    finally:
        _redis = None
    logger.info("Redis connection closed")


async def check_redis_health() -> bool:
    client = await get_redis()
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
