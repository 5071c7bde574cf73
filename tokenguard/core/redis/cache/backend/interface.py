from abc import ABC, abstractmethod
from typing import Any


class CacheBackend(ABC):
    """
    Shared key/value cache used by the stateful token components.

    Values are arbitrary JSON-serializable objects. A ``ttl`` of ``None`` stores
    the value without expiry. Implementations raise ``CacheUnavailableError``
    when the underlying store cannot be reached.
    """

    @abstractmethod
    async def get_value(self, key: str) -> Any:
        """Retrieve a value from the cache by its key."""
        raise NotImplementedError

    @abstractmethod
    async def set_value(self, key: str, value: Any, ttl: int | None) -> None:
        """Store a value in the cache with a specified time-to-live (ttl)."""
        raise NotImplementedError

    @abstractmethod
    async def has(self, key: str) -> bool:
        """Check whether a non-expired value exists for the key."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a value from the cache by its key."""
        raise NotImplementedError

    @abstractmethod
    async def add_value(self, key: str, value: Any, ttl: int | None) -> bool:
        """Store a value only if the key is absent. Returns True when stored."""
        raise NotImplementedError

    @abstractmethod
    async def delete_if_equals(self, key: str, value: Any) -> bool:
        """Delete the key only while it still holds ``value``."""
        raise NotImplementedError
