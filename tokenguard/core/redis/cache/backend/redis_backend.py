from collections.abc import Awaitable
from typing import Any, cast

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from loggers import get_logger
from tokenguard.core.errors.exceptions import CacheUnavailableError
from tokenguard.core.redis.cache.backend.interface import CacheBackend
from tokenguard.core.redis.cache.coder.json_coder import JsonCoder
from tokenguard.core.redis.scripts import COMPARE_AND_DELETE_SCRIPT

logger = get_logger(__name__)


class RedisCacheBackend(CacheBackend):
    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        prefix: str = "tokenguard",
        coder: type[JsonCoder] = JsonCoder,
    ) -> None:
        self.redis = redis
        self.prefix = prefix
        self.coder = coder

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    @staticmethod
    def _unavailable(
        operation: str, key: str, exc: Exception
    ) -> CacheUnavailableError:
        logger.error("Redis %s failed for key %s: %s", operation, key, exc)
        return CacheUnavailableError(
            "Shared cache is unavailable",
            additional_info={"operation": operation, "key": key},
        )

    async def get_value(self, key: str) -> Any:
        """Retrieve a value from the cache by its key."""
        try:
            raw = await self.redis.get(self._key(key))
        except RedisError as exc:
            raise self._unavailable("get", key, exc) from exc
        if raw is None:
            return None
        return self.coder.decode(raw)

    async def set_value(self, key: str, value: Any, ttl: int | None) -> None:
        """Store a value in the cache with a specified time-to-live (ttl)."""
        try:
            await self.redis.set(self._key(key), self.coder.encode(value), ex=ttl)
        except RedisError as exc:
            raise self._unavailable("set", key, exc) from exc

    async def has(self, key: str) -> bool:
        try:
            return bool(await self.redis.exists(self._key(key)))
        except RedisError as exc:
            raise self._unavailable("exists", key, exc) from exc

    async def delete(self, key: str) -> None:
        """Delete a value from the cache by its key."""
        try:
            await self.redis.delete(self._key(key))
        except RedisError as exc:
            raise self._unavailable("delete", key, exc) from exc

    async def add_value(self, key: str, value: Any, ttl: int | None) -> bool:
        try:
            stored = await self.redis.set(
                self._key(key),
                self.coder.encode(value),
                ex=ttl,
                nx=True,
            )
        except RedisError as exc:
            raise self._unavailable("set-nx", key, exc) from exc
        return bool(stored)

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        try:
            deleted = await cast(
                Awaitable[int],
                self.redis.eval(
                    COMPARE_AND_DELETE_SCRIPT,
                    1,
                    self._key(key),
                    self.coder.encode(value),
                ),
            )
        except RedisError as exc:
            raise self._unavailable("compare-and-delete", key, exc) from exc
        return bool(deleted)
