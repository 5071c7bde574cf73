from collections.abc import Awaitable
from typing import cast

from fastapi import FastAPI
from redis.asyncio import Redis
from redis.exceptions import RedisError

from loggers import get_logger
from tokenguard.core.errors.exceptions import CacheUnavailableError
from tokenguard.main.config import RedisConfig

logger = get_logger("redis")


def create_redis_client(config: RedisConfig) -> Redis:
    """Client for ``config.dsn``. Values stay bytes, the cache coder decodes them."""
    client = Redis.from_url(
        config.dsn,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT,
    )
    return cast(Redis, client)


async def on_redis_startup(app: FastAPI, config: RedisConfig) -> Redis:
    """
    Connect to Redis and attach the client to ``app.state.redis_client``.

    Raises:
        CacheUnavailableError: If the server does not answer the startup ping
    """
    redis_client = create_redis_client(config)
    try:
        await cast(Awaitable[bool], redis_client.ping())
    except RedisError as exc:
        logger.error(
            "Redis ping failed for %s:%s: %s", config.REDIS_HOST, config.REDIS_PORT, exc
        )
        await redis_client.aclose()
        raise CacheUnavailableError(
            "Shared cache is unavailable at startup",
            additional_info={"host": config.REDIS_HOST, "port": config.REDIS_PORT},
        ) from exc
    app.state.redis_client = redis_client
    logger.info("Redis client connected to %s:%s", config.REDIS_HOST, config.REDIS_PORT)
    return redis_client


async def on_redis_shutdown(app: FastAPI) -> None:
    redis_client = getattr(app.state, "redis_client", None)
    if redis_client is None:
        return
    logger.info("Closing Redis client...")
    await redis_client.aclose()
    app.state.redis_client = None
    logger.info("Redis client closed.")
