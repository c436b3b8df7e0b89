"""Abstract base class for state store backends."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from gatekeeper.exceptions import StateStoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

UpdateFn = Callable[[Any | None], tuple[Any | None, T]]
"""Maps the current value to (new value or None for no write, result)."""


@dataclass
class StoreEntry:
    """
    A stored value with expiry metadata.

    Attributes:
        key: Store key
        value: Stored data (JSON-serializable)
        expires_at: Epoch seconds after which the entry is gone (None = never)
    """

    key: str
    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        """Check if entry has expired at `now`."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at

    def ttl_remaining(self, now: float) -> float | None:
        """Get remaining TTL in seconds, or None if no expiry."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - now)


class StateStore(ABC):
    """
    Key-value store with atomic read-modify-write per key.

    Implement this class to add new storage backends. Backends must raise
    `StateStoreUnavailable` when they cannot answer, never report a key as
    absent because of an error.
    """

    cas_max_retries: int = 50

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this backend.

        Returns:
            Backend name (e.g., 'memory', 'redis', 'sql', 'tiered')
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """
        Check if the backend is connected and healthy.

        Returns:
            True if connected, False otherwise
        """
        ...

    @property
    def supports_cas(self) -> bool:
        """Whether `compare_and_swap` is atomic on this backend."""
        return True

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """
        Get a value from the store.

        Args:
            key: Store key

        Returns:
            Stored value, or None if not found/expired
        """
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        """
        Set a value unconditionally.

        Args:
            key: Store key
            value: Value to store (must be JSON-serializable)
            ttl_seconds: Time-to-live in seconds (None = use default)

        Returns:
            True if successful
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete a value.

        Returns:
            True if deleted, False if not found
        """
        ...

    @abstractmethod
    async def compare_and_swap(
        self,
        key: str,
        expected: Any | None,
        new: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        """
        Replace the value of `key` with `new` only if it still equals `expected`.

        Args:
            key: Store key
            expected: Value previously read, or None to require the key be absent
            new: Replacement value
            ttl_seconds: Time-to-live for the new value

        Returns:
            True if the swap happened, False if another writer got there first
        """
        ...

    @abstractmethod
    async def clear(self, pattern: str | None = None) -> int:
        """
        Clear entries.

        Args:
            pattern: Optional glob pattern to match keys (e.g., "quota:*")
                    None = clear all entries

        Returns:
            Number of entries cleared
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the store connection."""
        ...

    async def atomic_update(
        self,
        key: str,
        fn: UpdateFn[T],
        ttl_seconds: int | None = None,
    ) -> T:
        """
        Apply `fn` to the current value as one atomic read-modify-write.

        `fn` may run several times under contention and must not have side
        effects. Returning None as the new value skips the write.

        Returns:
            The result of the invocation of `fn` that was committed

        Raises:
            StateStoreUnavailable: If the update kept losing races
        """
        for _ in range(self.cas_max_retries):
            current = await self.get(key)
            new, result = fn(current)
            if new is None or new == current:
                return result
            if await self.compare_and_swap(key, current, new, ttl_seconds):
                return result

        logger.error(f"Gave up on atomic update of {key} after {self.cas_max_retries} attempts")
        raise StateStoreUnavailable(
            f"Could not commit update to {key} after {self.cas_max_retries} attempts"
        )

    async def increment(
        self,
        key: str,
        delta: float = 1.0,
        ttl_seconds: int | None = None,
    ) -> float:
        """
        Atomically add `delta` to a numeric value.

        Args:
            key: Store key
            delta: Amount to add (can be negative)
            ttl_seconds: TTL applied when the counter is created

        Returns:
            New value after increment
        """

        def bump(current: Any | None) -> tuple[float, float]:
            new_value = float(current or 0) + delta
            return new_value, new_value

        return await self.atomic_update(key, bump, ttl_seconds)

    async def health_check(self) -> dict[str, Any]:
        """
        Perform a health check on the store backend.

        Returns:
            Dict with health status info
        """
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
