"""
Signing key rotation backed by the shared cache.

Cache layout (all keys under the backend prefix):

    jwt:keys:current:<alg>   id of the current key for the algorithm
    jwt:keys:key:<id>        encrypted key record, expires at grace_expires_at
    jwt:keys:history         newest-first metadata, at most KEY_MAX_KEYS per algorithm
    jwt:keys:lock:<alg>      single-writer lock for publishing a new key

Each key goes through three states: active (signs and verifies), grace (verify
only) and expired (purged).
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from loggers import get_logger
from tokenguard.core.errors.exceptions import (
    CacheUnavailableError,
    ConfigurationError,
    SigningKeyError,
)
from tokenguard.core.redis.cache.backend.interface import CacheBackend
from tokenguard.core.utils.datetime_utils import Clock, unix_now
from tokenguard.core.utils.encryption import SecretCipher
from tokenguard.main.config import SUPPORTED_ALGORITHMS, KeyRotationConfig
from tokenguard.tokens.key_factory import KeyFactory
from tokenguard.tokens.keys import SigningKey

logger = get_logger(__name__)

HISTORY_KEY = "jwt:keys:history"


def current_key_name(algorithm: str) -> str:
    return f"jwt:keys:current:{algorithm}"


def key_record_name(key_id: str) -> str:
    return f"jwt:keys:key:{key_id}"


def lock_name(algorithm: str) -> str:
    return f"jwt:keys:lock:{algorithm}"


def _history_entry(key: SigningKey) -> dict[str, Any]:
    return {
        "id": key.id,
        "algorithm": key.algorithm,
        "created_at": key.created_at,
        "expires_at": key.expires_at,
        "grace_expires_at": key.grace_expires_at,
    }


class KeyRotationManager:
    """
    Owns the current signing key per algorithm and the keys still in grace.

    When the shared cache is unreachable the manager keeps serving the keys this
    process saw last (or a process-local key when it saw none) and logs an
    error; such keys are never published.
    """

    def __init__(
        self,
        cache: CacheBackend,
        config: KeyRotationConfig,
        *,
        storage_secret: str | None = None,
        algorithms: Iterable[str] = ("HS256",),
        clock: Clock = unix_now,
        key_factory: KeyFactory | None = None,
        poll_interval: float = 0.05,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.algorithms = list(algorithms)
        if not self.algorithms:
            raise ConfigurationError("At least one signing algorithm is required")
        for algorithm in self.algorithms:
            self._check_algorithm(algorithm)

        self.cache = cache
        self.config = config
        self.clock = clock
        self.cipher = SecretCipher(storage_secret or config.KEY_STORAGE_SECRET or "")
        self.key_factory = key_factory or KeyFactory(config.KEY_STRENGTH)
        self.poll_interval = poll_interval
        self._sleep = sleep

        self._current: dict[str, SigningKey] = {}
        self._known: dict[str, SigningKey] = {}

    @property
    def default_algorithm(self) -> str:
        return self.algorithms[0]

    @staticmethod
    def _check_algorithm(algorithm: str) -> None:
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported algorithm: {algorithm}",
                code="JWT_UNSUPPORTED_ALGORITHM",
            )

    # ----- Key state ----- #
    def needs_rotation(self, key: SigningKey) -> bool:
        return key.needs_rotation(self.clock())

    def is_key_expired(self, key: SigningKey) -> bool:
        return key.is_expired(self.clock())

    def _must_replace(self, key: SigningKey) -> bool:
        now = self.clock()
        if key.is_expired(now) or not key.can_sign:
            return True
        return self.config.KEY_AUTO_ROTATION and key.needs_rotation(now)

    def _remember(self, key: SigningKey, *, current: bool = False) -> None:
        self._known[key.id] = key
        if current:
            self._current[key.algorithm] = key

    async def generate_new_key(self, algorithm: str | None = None) -> SigningKey:
        """Create a key with fresh material and the configured lifetime, unpublished."""
        algorithm = algorithm or self.default_algorithm
        self._check_algorithm(algorithm)
        return await asyncio.to_thread(
            self.key_factory.create,
            algorithm,
            now=self.clock(),
            lifetime=self.config.KEY_ROTATION_INTERVAL,
            grace_period=self.config.KEY_GRACE_PERIOD,
        )

    # ----- Storage ----- #
    async def _load_key(self, key_id: str) -> SigningKey | None:
        record = await self.cache.get_value(key_record_name(key_id))
        if record is None:
            return None
        try:
            key = SigningKey.model_validate_json(self.cipher.decrypt(record))
        except (ValueError, ValidationError) as exc:
            logger.warning("Discarding unreadable signing key %s: %s", key_id, exc)
            await self.cache.delete(key_record_name(key_id))
            return None
        self._remember(key)
        return key

    async def _load_current(self, algorithm: str) -> SigningKey | None:
        key_id = await self.cache.get_value(current_key_name(algorithm))
        if not key_id:
            return None
        return await self._load_key(key_id)

    async def _get_history(self) -> list[dict[str, Any]]:
        history = await self.cache.get_value(HISTORY_KEY)
        return history if isinstance(history, list) else []

    async def _publish(self, key: SigningKey) -> None:
        now = self.clock()
        await self.cache.set_value(
            key_record_name(key.id),
            self.cipher.encrypt(key.model_dump_json()),
            ttl=max(key.grace_expires_at - now, 1),
        )

        history = [_history_entry(key)] + [
            entry for entry in await self._get_history() if entry["id"] != key.id
        ]
        kept, dropped = [], []
        # Newest first, so the current key of every algorithm survives the cap.
        per_algorithm: dict[str, int] = {}
        for entry in history:
            algorithm = entry["algorithm"]
            seen = per_algorithm.get(algorithm, 0)
            if entry["grace_expires_at"] <= now or seen >= self.config.KEY_MAX_KEYS:
                dropped.append(entry)
            else:
                kept.append(entry)
                per_algorithm[algorithm] = seen + 1
        await self.cache.set_value(HISTORY_KEY, kept, ttl=None)
        await self.cache.set_value(current_key_name(key.algorithm), key.id, ttl=None)

        for entry in dropped:
            await self.cache.delete(key_record_name(entry["id"]))
            self._known.pop(entry["id"], None)
        if dropped:
            logger.info(
                "Purged %d signing key(s) beyond the per-algorithm history cap",
                len(dropped),
            )

        self._remember(key, current=True)
        logger.info(
            "Published new %s signing key %s (expires_at=%s, grace_expires_at=%s)",
            key.algorithm,
            key.id,
            key.expires_at,
            key.grace_expires_at,
        )

    async def _replace_current(
        self, algorithm: str, stale_id: str | None
    ) -> SigningKey:
        """
        Publish a new current key under the single-writer lock.

        Whoever holds the lock re-reads the current key first, so concurrent
        callers that all saw ``stale_id`` end up sharing one new key.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2 * self.config.KEY_LOCK_TIMEOUT
        lock_token = uuid4().hex

        while True:
            if await self.cache.add_value(
                lock_name(algorithm), lock_token, ttl=self.config.KEY_LOCK_TIMEOUT
            ):
                try:
                    current = await self._load_current(algorithm)
                    if (
                        current is not None
                        and current.id != stale_id
                        and not self._must_replace(current)
                    ):
                        self._remember(current, current=True)
                        return current
                    key = await self.generate_new_key(algorithm)
                    await self._publish(key)
                    return key
                finally:
                    await self.cache.delete_if_equals(lock_name(algorithm), lock_token)

            current = await self._load_current(algorithm)
            if (
                current is not None
                and current.id != stale_id
                and not self._must_replace(current)
            ):
                self._remember(current, current=True)
                return current
            if loop.time() >= deadline:
                raise SigningKeyError(
                    f"Timed out waiting for {algorithm} key publication",
                    code="JWT_KEY_LOCK_TIMEOUT",
                )
            await self._sleep(self.poll_interval)

    # ----- Fail-open fallback ----- #
    async def _fallback_key(
        self, algorithm: str, exc: CacheUnavailableError
    ) -> SigningKey:
        key = self._current.get(algorithm)
        if key is not None and not self.is_key_expired(key):
            logger.error(
                "Shared cache unavailable, serving last known %s key %s: %s",
                algorithm,
                key.id,
                exc.message,
            )
            return key

        key = await self.generate_new_key(algorithm)
        self._remember(key, current=True)
        logger.error(
            "Shared cache unavailable, serving process-local %s key %s: %s",
            algorithm,
            key.id,
            exc.message,
        )
        return key

    # ----- Public API ----- #
    async def get_current_key(self, algorithm: str | None = None) -> SigningKey:
        """
        Return the key new tokens must be signed with, rotating it when due.

        Raises:
            ConfigurationError: Unsupported algorithm
            KeyGenerationError: Key material could not be generated
            SigningKeyError: Timed out waiting for another writer
        """
        algorithm = algorithm or self.default_algorithm
        self._check_algorithm(algorithm)
        try:
            key = await self._load_current(algorithm)
            if key is not None and not self._must_replace(key):
                self._remember(key, current=True)
                return key
            if key is not None:
                logger.info("Signing key %s is due for rotation", key.id)
            return await self._replace_current(algorithm, key.id if key else None)
        except CacheUnavailableError as exc:
            return await self._fallback_key(algorithm, exc)

    async def rotate_key(self, algorithm: str | None = None) -> SigningKey:
        """
        Force a new current key. The previous key stays verifiable until its
        grace period ends.
        """
        algorithm = algorithm or self.default_algorithm
        self._check_algorithm(algorithm)
        current = await self._load_current(algorithm)
        key = await self._replace_current(algorithm, current.id if current else None)
        logger.warning(
            "Signing key for %s rotated manually: %s -> %s",
            algorithm,
            current.id if current else None,
            key.id,
        )
        return key

    async def get_key_by_id(self, key_id: str) -> SigningKey | None:
        try:
            key = await self._load_key(key_id)
        except CacheUnavailableError:
            key = self._known.get(key_id)
        if key is None or self.is_key_expired(key):
            return None
        return key

    async def get_valid_keys(self) -> list[SigningKey]:
        """
        Current keys of every configured algorithm plus historical keys still
        inside their grace period.
        """
        now = self.clock()
        keys: dict[str, SigningKey] = {}
        for algorithm in self.algorithms:
            key = await self.get_current_key(algorithm)
            keys[key.id] = key

        try:
            history = await self._get_history()
            for entry in history:
                if entry["id"] in keys or entry["grace_expires_at"] <= now:
                    continue
                key = await self._load_key(entry["id"])
                if key is not None and not key.is_expired(now):
                    keys[key.id] = key
        except CacheUnavailableError as exc:
            logger.error(
                "Shared cache unavailable, using locally known verification keys: %s",
                exc.message,
            )
            for key in self._known.values():
                if key.id not in keys and not key.is_expired(now):
                    keys[key.id] = key

        return list(keys.values())

    async def purge_expired_keys(self) -> int:
        """Forget every key past its grace period. Returns the number purged."""
        now = self.clock()
        history = await self._get_history()
        kept = [entry for entry in history if entry["grace_expires_at"] > now]
        expired = [entry for entry in history if entry["grace_expires_at"] <= now]
        for entry in expired:
            await self.cache.delete(key_record_name(entry["id"]))
        if expired:
            await self.cache.set_value(HISTORY_KEY, kept, ttl=None)
            logger.info("Purged %d expired signing key(s)", len(expired))

        for key_id, key in list(self._known.items()):
            if key.is_expired(now):
                self._known.pop(key_id)
        return len(expired)

    async def get_rotation_stats(self) -> dict[str, Any]:
        now = self.clock()
        history = await self._get_history()
        algorithms: dict[str, Any] = {}
        for algorithm in self.algorithms:
            current = await self._load_current(algorithm)
            algorithms[algorithm] = (
                {
                    "current_key_id": current.id,
                    "created_at": current.created_at,
                    "expires_at": current.expires_at,
                    "grace_expires_at": current.grace_expires_at,
                    "needs_rotation": current.needs_rotation(now),
                    "seconds_until_rotation": max(0, current.expires_at - now),
                }
                if current
                else None
            )
        return {
            "algorithms": algorithms,
            "total_keys": len(history),
            "keys_in_grace": sum(
                1 for e in history if e["expires_at"] <= now < e["grace_expires_at"]
            ),
            "expired_keys": sum(1 for e in history if e["grace_expires_at"] <= now),
            "max_keys": self.config.KEY_MAX_KEYS,
            "rotation_interval": self.config.KEY_ROTATION_INTERVAL,
            "grace_period": self.config.KEY_GRACE_PERIOD,
            "auto_rotation": self.config.KEY_AUTO_ROTATION,
        }
