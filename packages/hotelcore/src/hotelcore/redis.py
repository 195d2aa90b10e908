"""
Redis client utilities for hotelcore.

Provides lazy-initialized Redis client to avoid import-time connections.
"""

import functools

import redis

from hotelcore.settings import get_settings


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """
    Get Redis client (cached).

    This function lazily initializes the Redis client to avoid import-time connections.
    """
    url = get_settings().REDIS_URL
    return redis.from_url(url, decode_responses=True)
