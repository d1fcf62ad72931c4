"""Redis connection helper."""

import logging

import redis.asyncio as aioredis


logger = logging.getLogger(__name__)


def create_redis(url: str) -> aioredis.Redis:
    """Create an asyncio Redis client with decoded string responses."""
    client = aioredis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        health_check_interval=30,
    )
    logger.debug(f"Redis client created for {url.split('@')[-1]}")
    return client
