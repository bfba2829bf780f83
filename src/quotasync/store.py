"""Redis store connections.

Engines accept any caller-supplied ``redis.asyncio.Redis``; this module builds
one from a ``RedisStoreConfig`` the same way for every component, and checks
it is reachable.
"""

from __future__ import annotations

import logging

from redis import asyncio as redis_asyncio
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError

from quotasync.schemas import RedisStoreConfig

logger = logging.getLogger(__name__)


def create_client(config: RedisStoreConfig) -> redis_asyncio.Redis:
    """Create a pooled Redis client from configuration (no I/O).

    Args:
        config: Store configuration

    Returns:
        Redis client backed by its own connection pool
    """
    pool = ConnectionPool.from_url(
        config.url,
        db=config.db,
        password=config.password,
        max_connections=config.pool_max_size,
        socket_timeout=config.socket_timeout,
        socket_connect_timeout=config.socket_connect_timeout,
        decode_responses=False,  # We work with bytes for performance
    )
    return redis_asyncio.Redis.from_pool(pool)


async def connect(config: RedisStoreConfig) -> redis_asyncio.Redis:
    """Create a client and verify the store answers PING.

    Raises:
        redis.exceptions.ConnectionError: If the store is unreachable
    """
    client = create_client(config)
    try:
        await client.ping()
    except (OSError, TimeoutError, RedisError) as e:
        logger.error("Failed to connect to Redis at %s (db=%d): %s", config.url, config.db, e)
        await client.aclose()
        raise

    logger.info(
        "Created Redis connection pool (max=%d, url=%s, db=%d)",
        config.pool_max_size,
        config.url,
        config.db,
    )
    return client
