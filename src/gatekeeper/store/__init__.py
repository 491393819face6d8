"""
Counter store module.

Provides the shared state behind the admission algorithms: an exact
in-memory store for single-instance deployments and a Redis store for
sharing counters across instances.
"""

from gatekeeper.store.base import CounterStore, StoreEntry, StoreUnavailable
from gatekeeper.store.memory import InMemoryCounterStore
from gatekeeper.store.redis import RedisCounterStore
from gatekeeper.store.factory import create_store, get_store

__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "StoreEntry",
    "StoreUnavailable",
    "create_store",
    "get_store",
]
