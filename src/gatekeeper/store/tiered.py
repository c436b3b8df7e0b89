"""Cache tier in front of a durable tier."""

import logging
from typing import Any

from gatekeeper.exceptions import StateStoreUnavailable
from gatekeeper.store.base import StateStore
from gatekeeper.store.durable import DurableStore

logger = logging.getLogger(__name__)


def _envelope(value: Any, version: int) -> dict[str, Any]:
    return {"version": version, "value": value}


class TieredStore(StateStore):
    """
    Fast cache tier backed by a durable tier for recovery.

    The cache tier is authoritative for atomicity: every compare-and-swap
    runs there. Cached values are wrapped with a version that increases on
    each commit, and the durable copy only accepts a write carrying a newer
    version, so write-throughs that finish out of order never replace newer
    state. On a cache miss the durable copy and its version are loaded back
    into the cache (insert-if-absent) before use.
    """

    def __init__(self, cache: StateStore, durable: DurableStore) -> None:
        self._cache = cache
        self._durable = durable
        self.cas_max_retries = cache.cas_max_retries

    @property
    def name(self) -> str:
        return "tiered"

    @property
    def cache(self) -> StateStore:
        return self._cache

    @property
    def durable(self) -> DurableStore:
        return self._durable

    @property
    def is_connected(self) -> bool:
        return self._cache.is_connected

    @property
    def supports_cas(self) -> bool:
        return self._cache.supports_cas

    async def _write_through(self, key: str, value: Any, version: int, ttl_seconds: int | None) -> None:
        try:
            written = await self._durable.set_if_newer(key, value, version, ttl_seconds)
        except StateStoreUnavailable as e:
            # The cache still holds the committed value
            logger.warning(f"Durable write-through failed for {key}: {e}")
            return
        if not written:
            logger.debug(f"Skipped stale write-through of {key} version {version}")

    async def _load(self, key: str) -> dict[str, Any] | None:
        """Current cache envelope, restored from the durable tier on a miss."""
        envelope = await self._cache.get(key)
        if envelope is not None:
            return envelope

        persisted = await self._durable.get_versioned(key)
        if persisted is None:
            return None

        value, version = persisted
        logger.debug(f"Restoring {key} version {version} from durable tier")
        await self._cache.compare_and_swap(key, None, _envelope(value, version))
        return await self._cache.get(key)

    async def _commit(
        self,
        key: str,
        current: dict[str, Any] | None,
        value: Any,
        ttl_seconds: int | None,
    ) -> bool:
        version = (current["version"] if current else 0) + 1
        if not await self._cache.compare_and_swap(key, current, _envelope(value, version), ttl_seconds):
            return False
        await self._write_through(key, value, version, ttl_seconds)
        return True

    async def get(self, key: str) -> Any | None:
        envelope = await self._load(key)
        return None if envelope is None else envelope["value"]

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        for _ in range(self.cas_max_retries):
            if await self._commit(key, await self._load(key), value, ttl_seconds):
                return True
        raise StateStoreUnavailable(f"Could not commit write to {key} after {self.cas_max_retries} attempts")

    async def delete(self, key: str) -> bool:
        cached = await self._cache.delete(key)
        persisted = await self._durable.delete(key)
        return cached or persisted

    async def compare_and_swap(
        self,
        key: str,
        expected: Any | None,
        new: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        current = await self._load(key)
        if (current["value"] if current else None) != expected:
            return False
        return await self._commit(key, current, new, ttl_seconds)

    async def clear(self, pattern: str | None = None) -> int:
        cleared = await self._cache.clear(pattern)
        persisted = await self._durable.clear(pattern)
        return max(cleared, persisted)

    async def close(self) -> None:
        await self._cache.close()
        await self._durable.close()

    async def health_check(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "connected": self.is_connected,
            "cache": await self._cache.health_check(),
            "durable": await self._durable.health_check(),
        }
