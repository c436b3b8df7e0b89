"""Redis state store backend implementation."""

import json
import logging
from typing import Any

import redis.asyncio as aioredis

from gatekeeper.exceptions import StateStoreUnavailable
from gatekeeper.store.base import StateStore

logger = logging.getLogger(__name__)

# Atomic compare-and-swap. Values are compared in their canonical JSON form,
# so readers and writers must serialize identically.
COMPARE_AND_SWAP_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    local expected = ARGV[1]
    local require_absent = ARGV[2] == '1'
    local new_value = ARGV[3]
    local ttl = tonumber(ARGV[4])

    if require_absent then
        if current then
            return 0
        end
    elseif current ~= expected then
        return 0
    end

    if ttl > 0 then
        redis.call('SET', KEYS[1], new_value, 'EX', ttl)
    else
        redis.call('SET', KEYS[1], new_value)
    end
    return 1
"""

# Native float counter; TTL is only applied when the key has none yet.
INCREMENT_SCRIPT = """
    local value = redis.call('INCRBYFLOAT', KEYS[1], ARGV[1])
    local ttl = tonumber(ARGV[2])
    if ttl > 0 and redis.call('TTL', KEYS[1]) < 0 then
        redis.call('EXPIRE', KEYS[1], ttl)
    end
    return value
"""


class RedisStore(StateStore):
    """
    Redis state store for multi-process and multi-node deployments.

    Atomicity comes from Redis itself (Lua scripts run without interleaving),
    so limits hold across every process sharing the same Redis.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        default_ttl_seconds: int = 3600,
        prefix: str = "gatekeeper:",
        max_connections: int = 10,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        cas_max_retries: int = 50,
    ) -> None:
        """
        Initialize Redis store.

        Args:
            url: Redis connection URL
            default_ttl_seconds: Default TTL for entries
            prefix: Key prefix for namespacing
            max_connections: Maximum connections in pool
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
            cas_max_retries: Attempts for atomic updates under contention
        """
        self._url = url
        self._default_ttl = default_ttl_seconds
        self._prefix = prefix
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._client: Any = None
        self._connected = False
        self.cas_max_retries = cas_max_retries

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _get_key(self, key: str) -> str:
        """Get prefixed key."""
        return f"{self._prefix}{key}"

    def _serialize(self, value: Any) -> str:
        """Serialize value to canonical JSON."""
        return json.dumps(value, sort_keys=True, separators=(",", ":"))

    def _deserialize(self, data: str | bytes | None) -> Any | None:
        """Deserialize JSON string to value."""
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return json.loads(data)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Discarding undecodable Redis value: {data!r}")
            return None

    def _ttl(self, ttl_seconds: int | None) -> int:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        return int(ttl or 0)

    async def connect(self) -> bool:
        """
        Connect to Redis.

        Returns:
            True if connected successfully
        """
        if self._connected and self._client:
            return True

        try:
            self._client = aioredis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                decode_responses=False,
            )
            await self._client.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self._url}")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._connected = False
            return False

    async def _ensure_connected(self) -> None:
        """Ensure we're connected to Redis."""
        if not self._connected and not await self.connect():
            raise StateStoreUnavailable(f"Redis at {self._url} is unreachable")

    def _unavailable(self, operation: str, key: str, error: Exception) -> StateStoreUnavailable:
        logger.error(f"Redis {operation} error for {key}: {error}")
        return StateStoreUnavailable(f"Redis {operation} failed for {key}: {error}")

    async def get(self, key: str) -> Any | None:
        await self._ensure_connected()
        try:
            data = await self._client.get(self._get_key(key))
        except Exception as e:
            raise self._unavailable("GET", key, e) from e
        return self._deserialize(data)

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        await self._ensure_connected()
        ttl = self._ttl(ttl_seconds)
        try:
            serialized = self._serialize(value)
            if ttl > 0:
                await self._client.setex(self._get_key(key), ttl, serialized)
            else:
                await self._client.set(self._get_key(key), serialized)
            return True
        except Exception as e:
            raise self._unavailable("SET", key, e) from e

    async def delete(self, key: str) -> bool:
        await self._ensure_connected()
        try:
            result = await self._client.delete(self._get_key(key))
            return result > 0
        except Exception as e:
            raise self._unavailable("DELETE", key, e) from e

    async def compare_and_swap(
        self,
        key: str,
        expected: Any | None,
        new: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        await self._ensure_connected()
        try:
            swapped = await self._client.eval(
                COMPARE_AND_SWAP_SCRIPT,
                1,
                self._get_key(key),
                "" if expected is None else self._serialize(expected),
                "1" if expected is None else "0",
                self._serialize(new),
                str(self._ttl(ttl_seconds)),
            )
        except Exception as e:
            raise self._unavailable("CAS", key, e) from e
        return int(swapped) == 1

    async def increment(
        self,
        key: str,
        delta: float = 1.0,
        ttl_seconds: int | None = None,
    ) -> float:
        await self._ensure_connected()
        try:
            value = await self._client.eval(
                INCREMENT_SCRIPT,
                1,
                self._get_key(key),
                repr(float(delta)),
                str(self._ttl(ttl_seconds)),
            )
        except Exception as e:
            raise self._unavailable("INCRBYFLOAT", key, e) from e
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return float(value)

    async def clear(self, pattern: str | None = None) -> int:
        await self._ensure_connected()
        search_pattern = f"{self._prefix}{pattern or '*'}"
        try:
            # SCAN is safe for large keyspaces
            keys = []
            async for key in self._client.scan_iter(match=search_pattern):
                keys.append(key)

            if keys:
                await self._client.delete(*keys)

            return len(keys)
        except Exception as e:
            raise self._unavailable("CLEAR", search_pattern, e) from e

    async def close(self) -> None:
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._client = None
                self._connected = False

    async def health_check(self) -> dict[str, Any]:
        if not self._connected and not await self.connect():
            return {
                "backend": self.name,
                "connected": False,
                "error": "Not connected to Redis",
            }

        try:
            info = await self._client.info("server", "memory")
            keys_count = await self._client.dbsize()

            return {
                "backend": self.name,
                "connected": True,
                "redis_version": info.get("redis_version"),
                "used_memory_human": info.get("used_memory_human"),
                "total_keys": keys_count,
            }
        except Exception as e:
            return {
                "backend": self.name,
                "connected": self._connected,
                "error": str(e),
            }
