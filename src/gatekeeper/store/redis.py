"""Redis counter store implementation."""

import asyncio
import json
import time
import logging
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from gatekeeper.store.base import CounterStore, Mutation, StoreUnavailable

logger = logging.getLogger(__name__)

# Conditional write: replace KEYS[1] with ARGV[2] only if its current raw
# value equals ARGV[1] ('' means "key must be absent"). Returns 1 on swap,
# 0 on conflict. Runs atomically on the server.
COMPARE_AND_SWAP_SCRIPT = """
local current = redis.call('GET', KEYS[1]) or ''
if current ~= ARGV[1] then
    return 0
end
local ttl_ms = tonumber(ARGV[3])
if ttl_ms > 0 then
    redis.call('SET', KEYS[1], ARGV[2], 'PX', ttl_ms)
else
    redis.call('SET', KEYS[1], ARGV[2])
end
return 1
"""


class RedisCounterStore(CounterStore):
    """
    Redis counter store for multi-instance deployments.

    ``apply`` is a bounded compare-and-swap loop: read the raw value,
    compute the next value locally, then write it with a server-side
    conditional write that fails if anyone else wrote in between. On
    conflict the loop backs off and retries, up to ``max_retries``
    attempts, after which it raises ``StoreUnavailable`` rather than
    falling back to stale data.

    Expiry is delegated to Redis (``PX`` on every write), so no sweep
    runs client side.

    Consistency is that of the Redis deployment: a single primary gives
    linearizable per-key updates; reading from replicas or running an
    eventually consistent setup can transiently over-admit.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "gatekeeper:",
        max_retries: int = 5,
        backoff_seconds: float = 0.002,
        max_connections: int = 20,
        socket_timeout: float = 1.0,
        socket_connect_timeout: float = 1.0,
        reconnect_interval_seconds: float = 1.0,
    ) -> None:
        """
        Initialize Redis store.

        Args:
            url: Redis connection URL
            prefix: Key prefix for namespacing
            max_retries: Compare-and-swap attempts before giving up
            backoff_seconds: Base delay between attempts (multiplied by attempt)
            max_connections: Maximum connections in pool
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
            reconnect_interval_seconds: After a failed connect, operations fail
                fast for this long before another attempt is made
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._url = url
        self._prefix = prefix
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._reconnect_interval = reconnect_interval_seconds
        self._next_reconnect_at = 0.0
        self._connect_lock = asyncio.Lock()
        self._client: Any = None
        self._connected = False

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
        """Serialize value to JSON string."""
        return json.dumps({"v": value}, separators=(",", ":"))

    def _deserialize(self, data: str | bytes | None) -> Any | None:
        """Deserialize JSON string to value."""
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            parsed = json.loads(data)
            return parsed.get("v")
        except (json.JSONDecodeError, TypeError, AttributeError):
            logger.warning("Ignoring undecodable counter value in Redis")
            return None

    async def connect(self) -> bool:
        """
        Connect to Redis.

        A client left over from an earlier failed attempt is closed first,
        and a failed attempt closes the client it created.

        Returns:
            True if connected successfully
        """
        if self._connected and self._client:
            return True

        await self._discard_client()

        try:
            self._client = redis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                decode_responses=False,  # Raw bytes are compared by the CAS script
            )

            await self._client.ping()
            self._connected = True
            self._next_reconnect_at = 0.0
            logger.info(f"Connected to Redis at {self._url}")
            return True

        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            await self._discard_client()
            self._next_reconnect_at = time.monotonic() + self._reconnect_interval
            return False

    async def _discard_client(self) -> None:
        """Close and forget the current client, if any."""
        client, self._client = self._client, None
        self._connected = False
        if client is None:
            return
        try:
            await client.aclose()
        except Exception as e:
            logger.debug(f"Error closing stale Redis client: {e}")

    async def _ensure_connected(self) -> None:
        """
        Connect if needed, raising StoreUnavailable on failure.

        Only one reconnect runs at a time; after a failure, callers fail
        fast until ``reconnect_interval_seconds`` has passed.
        """
        if self._connected:
            return

        async with self._connect_lock:
            if self._connected:
                return
            if time.monotonic() < self._next_reconnect_at:
                raise StoreUnavailable(
                    f"Redis at {self._url} is unreachable (waiting before reconnecting)"
                )
            if not await self.connect():
                raise StoreUnavailable(f"Redis at {self._url} is unreachable")

    async def get(self, key: str) -> Any | None:
        """Get a value from the store."""
        await self._ensure_connected()

        try:
            data = await self._client.get(self._get_key(key))
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"Redis GET failed for {key}: {e}") from e
        return self._deserialize(data)

    async def apply(self, key: str, mutation: Mutation, ttl_seconds: int) -> Any:
        """Apply ``mutation`` with a bounded compare-and-swap loop."""
        await self._ensure_connected()

        redis_key = self._get_key(key)
        ttl_ms = int(ttl_seconds * 1000)

        for attempt in range(1, self._max_retries + 1):
            try:
                raw = await self._client.get(redis_key)
                new_value = mutation(self._deserialize(raw))
                swapped = await self._client.eval(
                    COMPARE_AND_SWAP_SCRIPT,
                    1,
                    redis_key,
                    raw if raw is not None else b"",
                    self._serialize(new_value),
                    ttl_ms,
                )
            except (RedisError, OSError) as e:
                raise StoreUnavailable(f"Redis apply failed for {key}: {e}") from e

            if int(swapped) == 1:
                return new_value

            logger.debug(f"CAS conflict on {key} (attempt {attempt}/{self._max_retries})")
            if attempt < self._max_retries:
                await asyncio.sleep(self._backoff * attempt)

        raise StoreUnavailable(
            f"Redis apply for {key} gave up after {self._max_retries} conflicting attempts"
        )

    async def delete(self, key: str) -> bool:
        """Delete a value from the store."""
        await self._ensure_connected()

        try:
            result = await self._client.delete(self._get_key(key))
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"Redis DELETE failed for {key}: {e}") from e
        return result > 0

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._client = None
                self._connected = False

    async def health_check(self) -> dict[str, Any]:
        """Return health status with Redis info."""
        try:
            await self._ensure_connected()
            info = await self._client.info("server")
        except (StoreUnavailable, RedisError, OSError) as e:
            return {
                "backend": self.name,
                "connected": False,
                "error": str(e),
            }

        return {
            "backend": self.name,
            "connected": True,
            "redis_version": info.get("redis_version"),
            "uptime_seconds": info.get("uptime_in_seconds"),
        }
