# connect python to redis

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def create_redis_client(url: str = "redis://localhost:6379/0") -> redis.Redis:
    """
    Build an asyncio Redis client from a URL.

    No connection is opened until the first command. decode_responses saves
    calling .decode() on everything we read back.
    """
    return redis.Redis.from_url(url, decode_responses=True)


async def check_connection(client: redis.Redis) -> bool:
    try:
        await client.ping()
        logger.info("Connected to Redis")
        return True
    except (RedisError, OSError) as e:
        logger.warning(f"Redis connection failed: {e}")
        return False
