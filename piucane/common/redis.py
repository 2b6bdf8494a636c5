"""
Shared Redis Client

One asyncio client per process, built from the ``redis`` config section.
The Redis repository uses it unless a client is injected.
"""

from typing import Optional

from redis.asyncio import Redis as AsyncRedis

from piucane.common.config import RedisConfig, get_config
from piucane.common.logger import app_logger

logger = app_logger.getChild("redis")

_redis_client: Optional[AsyncRedis] = None


def get_redis_client(redis_config: Optional[RedisConfig] = None) -> AsyncRedis:
    """
    Return the process-wide client, creating it on first use.

    No connection is opened here; redis-py connects on the first command.

    Args:
        redis_config: Connection settings (defaults to the app config)

    Returns:
        Async Redis client with string responses
    """
    global _redis_client

    if _redis_client is None:
        redis_config = redis_config or get_config().redis
        _redis_client = AsyncRedis.from_url(
            redis_config.connection_string,
            socket_connect_timeout=redis_config.connection_timeout,
            decode_responses=True
        )
        logger.info(f"Redis client created for {redis_config.host}:{redis_config.port}/{redis_config.db}")

    return _redis_client


async def reset_redis_client() -> None:
    """Close the shared client; the next ``get_redis_client`` call builds a new one."""
    global _redis_client

    if _redis_client is None:
        return

    client, _redis_client = _redis_client, None
    await client.aclose()
    logger.info("Redis client closed")
