"""Store factory for creating state stores based on configuration."""

import logging
from typing import Any

from gatekeeper.config import settings
from gatekeeper.db.manager import DatabaseManager
from gatekeeper.store.base import StateStore
from gatekeeper.store.durable import DurableStore
from gatekeeper.store.memory import InMemoryStore
from gatekeeper.store.redis import RedisStore
from gatekeeper.store.tiered import TieredStore

logger = logging.getLogger(__name__)

# Global store instance
_store_instance: StateStore | None = None


def create_cache_tier(backend: str | None = None, **kwargs: Any) -> StateStore:
    """
    Create the fast cache tier.

    Args:
        backend: Backend type ("memory" or "redis"), defaults to config
        **kwargs: Additional arguments passed to the backend

    Raises:
        ValueError: If backend type is unknown
    """
    backend_type = backend or settings.cache_backend

    if backend_type == "memory":
        return InMemoryStore(
            default_ttl_seconds=kwargs.get("ttl_seconds", settings.redis_ttl_seconds),
            max_size=kwargs.get("max_size"),
            clock=kwargs.get("clock"),
            cas_max_retries=settings.cas_max_retries,
        )

    if backend_type == "redis":
        url = kwargs.get("url", settings.redis_url)
        if not url:
            # Falling back silently would turn a shared limit into a per-process one
            raise ValueError(
                "Redis backend selected but no URL configured. "
                "Set GATEKEEPER_REDIS_URL or choose the memory backend."
            )
        return RedisStore(
            url=url,
            default_ttl_seconds=kwargs.get("ttl_seconds", settings.redis_ttl_seconds),
            prefix=kwargs.get("prefix", settings.redis_prefix),
            max_connections=kwargs.get("max_connections", 10),
            cas_max_retries=settings.cas_max_retries,
        )

    raise ValueError(f"Unknown cache backend: {backend_type}")


def create_store(
    backend: str | None = None,
    durable: bool | None = None,
    database_url: str | None = None,
    **kwargs: Any,
) -> StateStore:
    """
    Create a state store: the cache tier, optionally backed by a durable tier.

    Args:
        backend: Cache backend type, defaults to config
        durable: Whether to add the SQL durable tier, defaults to config
        database_url: Database URL for the durable tier, defaults to config
        **kwargs: Additional arguments passed to the cache backend

    Returns:
        StateStore instance
    """
    cache = create_cache_tier(backend, **kwargs)

    use_durable = settings.durable_store_enabled if durable is None else durable
    if not use_durable:
        return cache

    db_manager = DatabaseManager(database_url=database_url or settings.database_url)
    return TieredStore(
        cache=cache,
        durable=DurableStore(
            db_manager,
            clock=kwargs.get("clock"),
            cas_max_retries=settings.cas_max_retries,
        ),
    )


def get_store() -> StateStore:
    """
    Get the global store instance.

    Creates the store on first access using configuration settings.

    Returns:
        StateStore instance
    """
    global _store_instance

    if _store_instance is None:
        _store_instance = create_store()
        logger.info(f"Initialized {_store_instance.name} state store")

    return _store_instance


async def initialize_store() -> StateStore:
    """
    Initialize the global store and establish connections.

    Call this during application startup so connection problems surface
    before the first admission check.
    """
    store = get_store()
    cache = store.cache if isinstance(store, TieredStore) else store

    if isinstance(cache, RedisStore) and not await cache.connect():
        logger.error("Failed to connect to Redis; admission checks will fail until it recovers")

    return store


async def shutdown_store() -> None:
    """Close the global store and its connections."""
    global _store_instance

    if _store_instance is not None:
        await _store_instance.close()
        _store_instance = None
        logger.info("State store shutdown complete")


def reset_store() -> None:
    """
    Reset the global store instance.

    Useful for testing or when configuration changes.
    """
    global _store_instance
    _store_instance = None
