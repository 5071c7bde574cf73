from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from loggers import get_logger
from tokenguard.core.redis.cache.backend.redis_backend import RedisCacheBackend
from tokenguard.core.redis.lifecycle import on_redis_shutdown, on_redis_startup
from tokenguard.main.components import build_components
from tokenguard.main.config import get_settings
from tokenguard.main.sentry import init_sentry

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    config = get_settings()
    init_sentry(config)
    redis_client = await on_redis_startup(app, config.redis)

    cache = RedisCacheBackend(redis_client, prefix=config.redis.REDIS_KEY_PREFIX)
    app.state.components = build_components(config, cache)
    logger.info(
        "Token components ready (algorithm %s, key rotation %s)",
        config.jwt.JWT_ALGORITHM,
        "on" if config.keys.KEY_ROTATION_ENABLED else "off",
    )

    yield

    await on_redis_shutdown(app)
