"""In-memory counter store implementation."""

import asyncio
import logging
from typing import Any

from gatekeeper.clock import Clock, MonotonicClock
from gatekeeper.store.base import CounterStore, Mutation, StoreEntry

logger = logging.getLogger(__name__)


class _Shard:
    """One lock and the entries it guards."""

    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.entries: dict[str, StoreEntry] = {}


class InMemoryCounterStore(CounterStore):
    """
    Lock-striped in-memory counter store.

    Best for:
    - Single-instance deployments (exact: apply is serialized per shard)
    - Development and testing

    Limitations:
    - Not shared across instances
    - Lost on restart

    Keys are hashed onto a fixed number of shards, each with its own
    ``asyncio.Lock``, so unrelated keys rarely contend. Expired entries
    are dropped lazily on access and by a periodic sweep that takes a
    shard lock for one key at a time.
    """

    def __init__(
        self,
        shards: int = 64,
        clock: Clock | None = None,
        cleanup_interval_seconds: int = 60,
    ) -> None:
        """
        Initialize in-memory store.

        Args:
            shards: Number of lock stripes
            clock: Time source for expiry (monotonic by default)
            cleanup_interval_seconds: How often the sweep runs
        """
        if shards <= 0:
            raise ValueError("shards must be positive")
        self._shards = [_Shard() for _ in range(shards)]
        self._clock = clock or MonotonicClock()
        self._cleanup_interval = cleanup_interval_seconds
        self._cleanup_task: asyncio.Task | None = None
        self._connected = True

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    async def get(self, key: str) -> Any | None:
        """Get a value from the store."""
        shard = self._shard(key)
        async with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock.now()):
                del shard.entries[key]
                return None
            return entry.value

    async def apply(self, key: str, mutation: Mutation, ttl_seconds: int) -> Any:
        """Apply ``mutation`` under the key's shard lock."""
        shard = self._shard(key)
        async with shard.lock:
            now = self._clock.now()
            entry = shard.entries.get(key)
            previous = None
            if entry is not None and not entry.is_expired(now):
                previous = entry.value

            new_value = mutation(previous)
            shard.entries[key] = StoreEntry(
                value=new_value,
                expires_at=now + ttl_seconds if ttl_seconds > 0 else None,
            )
            return new_value

    async def delete(self, key: str) -> bool:
        """Delete a value from the store."""
        shard = self._shard(key)
        async with shard.lock:
            return shard.entries.pop(key, None) is not None

    async def cleanup_expired(self) -> int:
        """
        Remove expired entries.

        Candidates are collected from a snapshot; each removal re-checks
        expiry under the shard lock, so a key refreshed in between is kept.
        """
        removed = 0
        for shard in self._shards:
            now = self._clock.now()
            candidates = [k for k, v in list(shard.entries.items()) if v.is_expired(now)]
            for key in candidates:
                async with shard.lock:
                    entry = shard.entries.get(key)
                    if entry is not None and entry.is_expired(self._clock.now()):
                        del shard.entries[key]
                        removed += 1

        if removed:
            logger.debug(f"Evicted {removed} idle counter entries")
        return removed

    async def start_cleanup_task(self) -> None:
        """Start background task to periodically evict expired entries."""
        if self._cleanup_task is not None:
            return

        async def cleanup_loop():
            while self._connected:
                try:
                    await asyncio.sleep(self._cleanup_interval)
                    await self.cleanup_expired()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Counter store cleanup error: {e}")

        self._cleanup_task = asyncio.create_task(cleanup_loop())

    async def close(self) -> None:
        """Stop the sweep and drop all entries."""
        self._connected = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        for shard in self._shards:
            shard.entries.clear()

    async def health_check(self) -> dict[str, Any]:
        """Return health status with store statistics."""
        return {
            "backend": self.name,
            "connected": self.is_connected,
            "shards": len(self._shards),
            "total_entries": self.size(),
        }

    def size(self) -> int:
        """Get current number of entries (sync method for convenience)."""
        return sum(len(shard.entries) for shard in self._shards)
