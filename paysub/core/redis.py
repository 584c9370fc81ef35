"""Redis connection configuration."""

import redis.asyncio as redis

from paysub.core.config import settings


def create_redis_client(url: str = settings.REDIS_URL) -> redis.Redis:
    """New client with its own connection pool (one per event loop)."""
    return redis.from_url(url, decode_responses=True)
