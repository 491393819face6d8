"""Abstract base class for counter stores."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

Mutation = Callable[[Any | None], Any]
"""Receives the previous value (``None`` if absent) and returns the next value."""


class StoreUnavailable(Exception):
    """
    Raised when the counter store cannot complete an operation.

    Covers transport errors, timeouts and exhausted compare-and-swap
    retries. A store raising this has not applied the mutation.
    """

    pass


@dataclass
class StoreEntry:
    """
    A stored value with expiry metadata.

    Attributes:
        value: Stored data (JSON-serializable)
        expires_at: Clock time after which the entry is dead (None = never)
    """

    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        """Check if the entry has expired at ``now``."""
        return self.expires_at is not None and now >= self.expires_at


class CounterStore(ABC):
    """
    Shared state for the admission algorithms.

    Implementations must make ``apply`` atomic per key: two concurrent
    ``apply`` calls on the same key never interleave their
    read-modify-write.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this backend.

        Returns:
            Backend name (e.g., 'memory', 'redis')
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the backend is connected and healthy."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """
        Read a value without modifying it.

        Args:
            key: Store key

        Returns:
            Stored value, or None if absent/expired

        Raises:
            StoreUnavailable: If the store cannot be reached
        """
        ...

    @abstractmethod
    async def apply(self, key: str, mutation: Mutation, ttl_seconds: int) -> Any:
        """
        Atomically replace a value with ``mutation(previous)``.

        ``mutation`` may be invoked more than once (e.g. after a
        compare-and-swap conflict); only the result of the final,
        committed invocation is stored. It must not have side effects
        beyond its return value and local bookkeeping.

        Args:
            key: Store key
            mutation: Function from previous value (None if absent) to new value
            ttl_seconds: Idle time after which the entry may be evicted

        Returns:
            The committed new value

        Raises:
            StoreUnavailable: If the mutation could not be committed
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
    async def close(self) -> None:
        """Release connections and background tasks."""
        ...

    async def health_check(self) -> dict[str, Any]:
        """
        Perform a health check on the store.

        Returns:
            Dict with health status info
        """
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
