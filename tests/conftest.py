"""Pytest configuration and fixtures."""

import asyncio

import pytest

from gatekeeper.clock import ManualClock
from gatekeeper.limiter import Limiter
from gatekeeper.models import Algorithm, FallbackPolicy, Rule
from gatekeeper.rules import RuleRegistry
from gatekeeper.store.memory import InMemoryCounterStore
from gatekeeper.store.redis import COMPARE_AND_SWAP_SCRIPT


@pytest.fixture
def clock() -> ManualClock:
    """Deterministic clock starting at t=0."""
    return ManualClock(0.0)


@pytest.fixture
def store(clock: ManualClock) -> InMemoryCounterStore:
    """In-memory store sharing the test clock for expiry."""
    return InMemoryCounterStore(shards=8, clock=clock)


@pytest.fixture
def bucket_rule() -> Rule:
    """Token bucket: 5 tokens, 1 token/second."""
    return Rule(
        rule_id="api",
        capacity=5,
        algorithm=Algorithm.TOKEN_BUCKET,
        refill_rate_per_second=1.0,
    )


@pytest.fixture
def window_rule() -> Rule:
    """Sliding window: 10 requests per 60 seconds."""
    return Rule(
        rule_id="search",
        capacity=10,
        algorithm=Algorithm.SLIDING_WINDOW,
        window_seconds=60,
    )


@pytest.fixture
def login_rule() -> Rule:
    """Authentication endpoint rule (fails closed by default)."""
    return Rule(
        rule_id="login",
        capacity=3,
        algorithm=Algorithm.SLIDING_WINDOW,
        window_seconds=300,
        auth_endpoint=True,
    )


@pytest.fixture
def registry(bucket_rule: Rule, window_rule: Rule, login_rule: Rule) -> RuleRegistry:
    """Registry with the three standard rules plus an explicit fail-closed one."""
    strict = Rule(
        rule_id="strict",
        capacity=2,
        refill_rate_per_second=0.5,
        fallback_policy=FallbackPolicy.FAIL_CLOSED,
    )
    return RuleRegistry([bucket_rule, window_rule, login_rule, strict])


@pytest.fixture
def limiter(
    registry: RuleRegistry, store: InMemoryCounterStore, clock: ManualClock
) -> Limiter:
    """Limiter over the in-memory store and manual clock."""
    return Limiter(registry=registry, store=store, clock=clock, timeout_seconds=1.0)


class FakeRedis:
    """
    Minimal async Redis double.

    ``eval`` executes the compare-and-swap script's semantics. Setting
    ``interloper`` simulates another instance writing between a GET and
    the conditional write; ``yield_on_io`` makes every call a scheduling
    point so concurrent callers interleave.
    """

    def __init__(self, yield_on_io: bool = False) -> None:
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}
        self.interloper = None
        self.eval_calls = 0
        self.yield_on_io = yield_on_io

    async def _io(self) -> None:
        if self.yield_on_io:
            await asyncio.sleep(0)

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> bytes | None:
        await self._io()
        return self.data.get(key)

    async def eval(self, script, numkeys, key, expected, new_value, ttl_ms):
        assert script == COMPARE_AND_SWAP_SCRIPT
        assert numkeys == 1
        await self._io()
        self.eval_calls += 1
        if self.interloper is not None:
            self.interloper(self)

        current = self.data.get(key, b"")
        if current != expected:
            return 0
        self.data[key] = new_value.encode() if isinstance(new_value, str) else new_value
        self.ttls[key] = ttl_ms
        return 1

    async def delete(self, key: str) -> int:
        await self._io()
        return 1 if self.data.pop(key, None) is not None else 0

    async def info(self, section: str) -> dict:
        return {"redis_version": "7.2.0", "uptime_in_seconds": 42}

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Redis double for patching ``redis.asyncio.from_url``."""
    return FakeRedis()
