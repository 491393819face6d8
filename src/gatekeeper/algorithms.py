"""
Admission algorithms.

Provides two strategies, both evaluated inside a single
``CounterStore.apply`` so the read-compute-write step is atomic per key:
- Token Bucket: Burst-friendly limiting with continuous token refill
- Sliding Window Counter: Two fixed windows interpolated into a moving one
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Any

from gatekeeper.clock import Clock, SystemClock
from gatekeeper.models import Algorithm, BucketState, Rule, Verdict, WindowState
from gatekeeper.store.base import CounterStore

logger = logging.getLogger(__name__)


def storage_key(rule: Rule, client_key: str) -> str:
    """
    Key under which a client's state for ``rule`` is stored.

    The algorithm is the suffix, so switching a rule's algorithm starts
    from fresh state instead of misreading the old fields.
    """
    return f"{rule.rule_id}:{client_key}:{rule.algorithm.value}"


class AdmissionAlgorithm(ABC):
    """Abstract base class for admission algorithms."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    @property
    @abstractmethod
    def name(self) -> str:
        """Algorithm name, matches ``Algorithm`` values."""
        ...

    @abstractmethod
    def advance(
        self, rule: Rule, previous: dict[str, Any] | None, now: float
    ) -> tuple[dict[str, Any], Verdict]:
        """
        Decide one request and compute the next stored state.

        Pure function of its inputs; runs inside ``CounterStore.apply``.

        Args:
            rule: Rule to enforce
            previous: Stored state, or None if absent
            now: Current time in seconds

        Returns:
            (state to store, verdict)
        """
        ...

    @abstractmethod
    def estimate(self, rule: Rule, stored: dict[str, Any] | None, now: float) -> Verdict:
        """Verdict the next request would get, without consuming anything."""
        ...

    async def consume(self, store: CounterStore, client_key: str, rule: Rule) -> Verdict:
        """
        Check and consume quota for one request.

        Raises:
            StoreUnavailable: If the store could not commit the update
        """
        verdict: Verdict | None = None

        def mutate(previous: Any | None) -> dict[str, Any]:
            nonlocal verdict
            state, verdict = self.advance(rule, previous, self._clock.now())
            return state

        await store.apply(storage_key(rule, client_key), mutate, rule.idle_ttl_seconds)
        if verdict is None:
            raise RuntimeError(f"Counter store {store.name} returned without running the mutation")
        return verdict

    async def peek(self, store: CounterStore, client_key: str, rule: Rule) -> Verdict:
        """Read-only estimate for the next request."""
        stored = await store.get(storage_key(rule, client_key))
        return self.estimate(rule, stored, self._clock.now())


class TokenBucket(AdmissionAlgorithm):
    """
    Token bucket.

    Each key owns ``capacity`` tokens refilling at
    ``refill_rate_per_second``. A full bucket admits ``capacity``
    requests at once, then throttles to the refill rate.
    """

    @property
    def name(self) -> str:
        return Algorithm.TOKEN_BUCKET.value

    def _load(self, rule: Rule, previous: dict[str, Any] | None, now: float) -> BucketState:
        """Stored bucket, or a full one if absent or unreadable."""
        if previous is not None:
            try:
                return BucketState.from_dict(previous)
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Discarding malformed bucket state for rule {rule.rule_id}")
        return BucketState(tokens=float(rule.capacity), last_refill=now)

    def _refill_tokens(self, rule: Rule, bucket: BucketState, now: float) -> float:
        """Calculate current token count after refilling."""
        elapsed = max(0.0, now - bucket.last_refill)
        tokens = bucket.tokens + elapsed * rule.refill_rate_per_second
        return min(tokens, float(rule.capacity))

    def advance(
        self, rule: Rule, previous: dict[str, Any] | None, now: float
    ) -> tuple[dict[str, Any], Verdict]:
        bucket = self._load(rule, previous, now)
        tokens = self._refill_tokens(rule, bucket, now)
        last_refill = max(now, bucket.last_refill)

        if tokens >= 1:
            tokens -= 1
            verdict = Verdict(
                allowed=True,
                remaining=int(tokens),
                retry_after_seconds=0.0,
                limited_by=rule.rule_id,
                limit=rule.capacity,
            )
        else:
            verdict = Verdict(
                allowed=False,
                remaining=0,
                retry_after_seconds=(1 - tokens) / rule.refill_rate_per_second,
                limited_by=rule.rule_id,
                limit=rule.capacity,
            )

        return BucketState(tokens=tokens, last_refill=last_refill).to_dict(), verdict

    def estimate(self, rule: Rule, stored: dict[str, Any] | None, now: float) -> Verdict:
        tokens = self._refill_tokens(rule, self._load(rule, stored, now), now)
        allowed = tokens >= 1
        return Verdict(
            allowed=allowed,
            remaining=int(tokens),
            retry_after_seconds=0.0 if allowed else (1 - tokens) / rule.refill_rate_per_second,
            limited_by=rule.rule_id,
            limit=rule.capacity,
        )


class SlidingWindowCounter(AdmissionAlgorithm):
    """
    Sliding window counter.

    Time is split into fixed windows of ``window_seconds``. The count of
    the previous window is weighted by how much of it still overlaps a
    window-long interval ending now:

        estimated = previous * (1 - elapsed_fraction) + current

    This bounds the fixed-window boundary burst to ``2 * capacity``
    without storing per-request timestamps.
    """

    @property
    def name(self) -> str:
        return Algorithm.SLIDING_WINDOW.value

    def _load(self, rule: Rule, previous: dict[str, Any] | None) -> WindowState | None:
        if previous is None:
            return None
        try:
            return WindowState.from_dict(previous)
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Discarding malformed window state for rule {rule.rule_id}")
            return None

    def _roll(self, rule: Rule, state: WindowState | None, now: float) -> tuple[WindowState, float]:
        """
        Bring ``state`` to the window containing ``now``.

        Returns the rolled state and the elapsed fraction of the window.
        """
        window = rule.window_seconds
        window_start = math.floor(now / window) * window

        if state is None:
            state = WindowState(window_start=window_start)
        elif window_start < state.window_start:
            # Clock behind the last writer: count against the stored window.
            window_start = state.window_start
            now = window_start
        elif window_start != state.window_start:
            if window_start - state.window_start == window:
                previous = state.current_count
            else:
                previous = 0
            state = WindowState(window_start=window_start, current_count=0, previous_count=previous)

        fraction = (now - window_start) / window
        return state, fraction

    @staticmethod
    def _estimated_count(state: WindowState, fraction: float) -> float:
        return state.previous_count * (1 - fraction) + state.current_count

    def advance(
        self, rule: Rule, previous: dict[str, Any] | None, now: float
    ) -> tuple[dict[str, Any], Verdict]:
        state, fraction = self._roll(rule, self._load(rule, previous), now)
        estimated = self._estimated_count(state, fraction)

        if estimated < rule.capacity:
            state.current_count += 1
            verdict = Verdict(
                allowed=True,
                remaining=max(0, math.floor(rule.capacity - estimated - 1)),
                retry_after_seconds=0.0,
                limited_by=rule.rule_id,
                limit=rule.capacity,
            )
        else:
            verdict = Verdict(
                allowed=False,
                remaining=0,
                retry_after_seconds=rule.window_seconds * (1 - fraction),
                limited_by=rule.rule_id,
                limit=rule.capacity,
            )

        return state.to_dict(), verdict

    def estimate(self, rule: Rule, stored: dict[str, Any] | None, now: float) -> Verdict:
        state, fraction = self._roll(rule, self._load(rule, stored), now)
        estimated = self._estimated_count(state, fraction)
        allowed = estimated < rule.capacity
        return Verdict(
            allowed=allowed,
            remaining=max(0, math.floor(rule.capacity - estimated)),
            retry_after_seconds=0.0 if allowed else rule.window_seconds * (1 - fraction),
            limited_by=rule.rule_id,
            limit=rule.capacity,
        )


def get_algorithm(algorithm: Algorithm, clock: Clock | None = None) -> AdmissionAlgorithm:
    """Create the engine for ``algorithm``."""
    if algorithm is Algorithm.TOKEN_BUCKET:
        return TokenBucket(clock)
    if algorithm is Algorithm.SLIDING_WINDOW:
        return SlidingWindowCounter(clock)
    raise ValueError(f"Unknown algorithm: {algorithm}")
