"""Counter store factory for creating store instances based on configuration."""

import logging
from typing import Any

from gatekeeper.config import settings
from gatekeeper.store.base import CounterStore
from gatekeeper.store.memory import InMemoryCounterStore
from gatekeeper.store.redis import RedisCounterStore

logger = logging.getLogger(__name__)

# Global store instance
_store_instance: CounterStore | None = None


def create_store(
    backend: str | None = None,
    **kwargs: Any,
) -> CounterStore:
    """
    Create a counter store instance.

    Args:
        backend: Backend type ("memory" or "redis"), defaults to config
        **kwargs: Overrides for the backend's constructor arguments

    Returns:
        CounterStore instance

    Raises:
        ValueError: If backend type is unknown or redis has no URL
    """
    backend_type = backend or settings.store_backend

    if backend_type == "memory":
        return InMemoryCounterStore(
            shards=kwargs.get("shards", settings.memory_shards),
            clock=kwargs.get("clock"),
            cleanup_interval_seconds=kwargs.get(
                "cleanup_interval", settings.cleanup_interval_seconds
            ),
        )

    elif backend_type == "redis":
        url = kwargs.get("url", settings.redis_url)
        if not url:
            raise ValueError(
                "Redis store selected but no URL configured. Set REDIS_URL."
            )

        return RedisCounterStore(
            url=url,
            prefix=kwargs.get("prefix", settings.redis_prefix),
            max_retries=kwargs.get("max_retries", settings.cas_max_retries),
            backoff_seconds=kwargs.get("backoff_seconds", settings.cas_backoff_seconds),
            max_connections=kwargs.get("max_connections", settings.redis_max_connections),
            socket_timeout=kwargs.get("socket_timeout", settings.redis_socket_timeout),
            socket_connect_timeout=kwargs.get(
                "socket_connect_timeout", settings.redis_socket_timeout
            ),
            reconnect_interval_seconds=kwargs.get(
                "reconnect_interval_seconds", settings.redis_reconnect_interval_seconds
            ),
        )

    else:
        raise ValueError(f"Unknown store backend: {backend_type}")


def get_store() -> CounterStore:
    """
    Get the global store instance.

    Creates the store on first access using configuration settings.
    """
    global _store_instance

    if _store_instance is None:
        _store_instance = create_store()
        logger.info(f"Initialized {_store_instance.name} counter store")

    return _store_instance


async def initialize_store() -> CounterStore:
    """
    Initialize the global store and establish connections.

    Call this during application startup. A Redis store that cannot
    connect yet is kept: checks fall back per rule until it recovers.
    """
    store = get_store()

    if isinstance(store, RedisCounterStore):
        if not await store.connect():
            logger.warning("Redis not reachable at startup; checks will use fallback policies")

    if isinstance(store, InMemoryCounterStore):
        await store.start_cleanup_task()

    return store


async def shutdown_store() -> None:
    """Shutdown the global store and close connections."""
    global _store_instance

    if _store_instance is not None:
        await _store_instance.close()
        _store_instance = None
        logger.info("Counter store shutdown complete")


def reset_store() -> None:
    """
    Reset the global store instance.

    Useful for testing or when configuration changes.
    """
    global _store_instance
    _store_instance = None
