"""In-memory state store backend implementation."""

import asyncio
import copy
import fnmatch
import logging
from typing import Any

from gatekeeper.clock import Clock, default_clock
from gatekeeper.store.base import StateStore, StoreEntry

logger = logging.getLogger(__name__)


class InMemoryStore(StateStore):
    """
    In-memory state store using a dictionary guarded by an asyncio lock.

    Best for:
    - Single-process deployments
    - Development and testing

    Limitations:
    - Not shared across processes, so limits are per process
    - Lost on restart unless wrapped in a TieredStore
    """

    def __init__(
        self,
        default_ttl_seconds: int | None = None,
        max_size: int | None = None,
        clock: Clock | None = None,
        cas_max_retries: int = 50,
    ) -> None:
        """
        Initialize in-memory store.

        Args:
            default_ttl_seconds: Default TTL for entries (None = no expiry)
            max_size: Maximum number of entries (None = unlimited)
            clock: Time source used for expiry
            cas_max_retries: Attempts for atomic updates under contention
        """
        self._store: dict[str, StoreEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._max_size = max_size
        self._clock = clock or default_clock
        self._lock = asyncio.Lock()
        self._connected = True
        self.cas_max_retries = cas_max_retries

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _expires_at(self, ttl_seconds: int | None) -> float | None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        if ttl is None or ttl <= 0:
            return None
        return self._clock.now() + ttl

    def _live_entry(self, key: str) -> StoreEntry | None:
        """Return the entry for key, dropping it if expired (must hold lock)."""
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock.now()):
            del self._store[key]
            return None
        return entry

    def _write(self, key: str, value: Any, ttl_seconds: int | None) -> None:
        """Store a private copy of value (must hold lock)."""
        if self._max_size and key not in self._store and len(self._store) >= self._max_size:
            self._evict_soonest_expiring()
        self._store[key] = StoreEntry(
            key=key,
            value=copy.deepcopy(value),
            expires_at=self._expires_at(ttl_seconds),
        )

    def _evict_soonest_expiring(self) -> None:
        """Evict the entry closest to expiry (must hold lock)."""
        if not self._store:
            return
        victim = min(
            self._store.keys(),
            key=lambda k: self._store[k].expires_at or float("inf"),
        )
        logger.debug(f"Evicting {victim} from in-memory store")
        del self._store[victim]

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live_entry(key)
            return None if entry is None else copy.deepcopy(entry.value)

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        async with self._lock:
            self._write(key, value, ttl_seconds)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._store:
                del self._store[key]
                return True
            return False

    async def compare_and_swap(
        self,
        key: str,
        expected: Any | None,
        new: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        async with self._lock:
            entry = self._live_entry(key)
            current = None if entry is None else entry.value
            if current != expected:
                return False
            self._write(key, new, ttl_seconds)
            return True

    async def increment(
        self,
        key: str,
        delta: float = 1.0,
        ttl_seconds: int | None = None,
    ) -> float:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                new_value = float(delta)
                self._write(key, new_value, ttl_seconds)
            else:
                new_value = float(entry.value) + delta
                entry.value = new_value
            return new_value

    async def clear(self, pattern: str | None = None) -> int:
        async with self._lock:
            if pattern is None:
                count = len(self._store)
                self._store.clear()
                return count

            keys_to_delete = [k for k in self._store if fnmatch.fnmatch(k, pattern)]
            for key in keys_to_delete:
                del self._store[key]
            return len(keys_to_delete)

    async def keys(self, pattern: str = "*") -> list[str]:
        """List live keys matching a glob pattern."""
        async with self._lock:
            now = self._clock.now()
            return [
                k for k, v in self._store.items()
                if not v.is_expired(now) and fnmatch.fnmatch(k, pattern)
            ]

    async def cleanup_expired(self) -> int:
        """Remove all expired entries."""
        async with self._lock:
            now = self._clock.now()
            expired_keys = [k for k, v in self._store.items() if v.is_expired(now)]
            for key in expired_keys:
                del self._store[key]

            if expired_keys:
                logger.debug(f"Cleaned up {len(expired_keys)} expired state entries")

            return len(expired_keys)

    async def close(self) -> None:
        self._connected = False
        self._store.clear()

    async def health_check(self) -> dict[str, Any]:
        async with self._lock:
            total_entries = len(self._store)

        return {
            "backend": self.name,
            "connected": self.is_connected,
            "total_entries": total_entries,
            "max_size": self._max_size,
        }

    def size(self) -> int:
        """Get current number of entries (sync method for convenience)."""
        return len(self._store)
