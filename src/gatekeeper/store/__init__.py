"""
State store module.

Provides the key-value stores with atomic read-modify-write that back the
rate limiter and quota manager: an in-process store, Redis, a SQL durable
tier, and a tiered combination of a cache with the durable tier.
"""

from gatekeeper.store.base import StateStore, StoreEntry
from gatekeeper.store.durable import DurableStore
from gatekeeper.store.factory import create_store, get_store, initialize_store, shutdown_store
from gatekeeper.store.memory import InMemoryStore
from gatekeeper.store.redis import RedisStore
from gatekeeper.store.tiered import TieredStore

__all__ = [
    "DurableStore",
    "InMemoryStore",
    "RedisStore",
    "StateStore",
    "StoreEntry",
    "TieredStore",
    "create_store",
    "get_store",
    "initialize_store",
    "shutdown_store",
]
