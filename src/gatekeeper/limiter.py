"""
Public admission-control entry point.

The limiter looks up a rule, runs its algorithm against the counter
store and, when the store is unreachable or too slow, decides with the
rule's fallback policy instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

from gatekeeper.algorithms import AdmissionAlgorithm, get_algorithm, storage_key
from gatekeeper.clock import Clock
from gatekeeper.config import settings
from gatekeeper.models import Algorithm, FallbackPolicy, Rule, Verdict
from gatekeeper.rules import RuleRegistry
from gatekeeper.store.base import CounterStore, StoreUnavailable
from gatekeeper.store.factory import get_store

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LimiterStats:
    """In-process decision counters."""

    checks: int = 0
    allowed: int = 0
    rejected: int = 0
    store_failures: int = 0
    fail_open: int = 0
    fail_closed: int = 0

    def record(self, verdict: Verdict) -> None:
        self.checks += 1
        if verdict.allowed:
            self.allowed += 1
        else:
            self.rejected += 1

    def record_fallback(self, policy: FallbackPolicy) -> None:
        if policy is FallbackPolicy.FAIL_OPEN:
            self.fail_open += 1
        else:
            self.fail_closed += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class Limiter:
    """
    Admission controller.

    ``check`` is safe to call from many concurrent tasks. It waits on the
    store for at most ``timeout_seconds``; a slow store is handled like
    an unavailable one. A store call that has been dispatched always
    runs to completion, even if the caller times out or is cancelled,
    so a consumed token is never half-written.
    """

    def __init__(
        self,
        registry: RuleRegistry,
        store: CounterStore,
        clock: Clock | None = None,
        timeout_seconds: float | None = 0.25,
        fail_closed_retry_after: float = 1.0,
    ) -> None:
        """
        Initialize the limiter.

        Args:
            registry: Validated rules
            store: Shared counter store
            clock: Time source for the algorithms (wall clock by default)
            timeout_seconds: Max wait on the store per call (None = no limit)
            fail_closed_retry_after: Retry hint for fail-closed rejections
        """
        self._registry = registry
        self._store = store
        self._timeout = timeout_seconds
        self._fail_closed_retry_after = fail_closed_retry_after
        self._algorithms: dict[Algorithm, AdmissionAlgorithm] = {
            algorithm: get_algorithm(algorithm, clock) for algorithm in Algorithm
        }
        self._inflight: set[asyncio.Task] = set()
        self.stats = LimiterStats()

    @property
    def registry(self) -> RuleRegistry:
        return self._registry

    @property
    def store(self) -> CounterStore:
        return self._store

    def replace_registry(self, registry: RuleRegistry) -> None:
        """
        Swap in a new set of rules.

        Stored counters are kept; a rule that keeps its algorithm applies
        its new parameters to the existing counts on the next check.
        """
        self._registry = registry
        logger.info(f"Rule registry replaced ({len(registry)} rules)")

    async def check(self, client_key: str, rule_id: str) -> Verdict:
        """
        Decide whether one request from ``client_key`` may proceed.

        Args:
            client_key: Caller-derived identity (e.g. ``user:123``)
            rule_id: Registered rule to enforce

        Returns:
            Verdict; never raises for store failures

        Raises:
            UnknownRuleError: If ``rule_id`` is not registered
        """
        rule = self._registry.get(rule_id)
        algorithm = self._algorithms[rule.algorithm]

        try:
            verdict = await self._call_store(algorithm.consume(self._store, client_key, rule))
        except StoreUnavailable as e:
            verdict = self._fallback(rule, e)

        self.stats.record(verdict)
        return verdict

    async def peek(self, client_key: str, rule_id: str) -> Verdict:
        """Estimate the verdict for the next request without consuming quota."""
        rule = self._registry.get(rule_id)
        algorithm = self._algorithms[rule.algorithm]

        try:
            return await self._call_store(algorithm.peek(self._store, client_key, rule))
        except StoreUnavailable as e:
            return self._fallback(rule, e)

    async def reset(self, client_key: str, rule_id: str) -> bool:
        """
        Forget the stored state of ``client_key`` under ``rule_id``.

        Raises:
            StoreUnavailable: If the store cannot be reached
        """
        rule = self._registry.get(rule_id)
        return await self._call_store(self._store.delete(storage_key(rule, client_key)))

    async def _call_store(self, operation: Awaitable[T]) -> T:
        """Run a store operation under the timeout, shielded from cancellation."""
        task = asyncio.ensure_future(operation)
        self._inflight.add(task)
        task.add_done_callback(self._on_store_call_done)

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise StoreUnavailable(
                f"Counter store did not answer within {self._timeout}s"
            ) from None

    def _on_store_call_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Store call finished with error: {task.exception()}")

    def _fallback(self, rule: Rule, error: StoreUnavailable) -> Verdict:
        policy = rule.effective_fallback
        self.stats.store_failures += 1
        self.stats.record_fallback(policy)
        logger.warning(
            f"Counter store unavailable for rule {rule.rule_id}, applying {policy.value}: {error}"
        )

        if policy is FallbackPolicy.FAIL_OPEN:
            return Verdict(
                allowed=True,
                remaining=0,
                retry_after_seconds=0.0,
                limited_by=rule.rule_id,
                limit=rule.capacity,
                fallback=True,
            )
        return Verdict(
            allowed=False,
            remaining=0,
            retry_after_seconds=self._fail_closed_retry_after,
            limited_by=rule.rule_id,
            limit=rule.capacity,
            fallback=True,
        )

    async def drain(self) -> None:
        """Wait for store calls that outlived their callers."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def health_check(self) -> dict[str, Any]:
        """Store health plus decision counters."""
        return {
            "store": await self._store.health_check(),
            "rules": len(self._registry),
            "stats": self.stats.to_dict(),
        }


def create_limiter(
    registry: RuleRegistry | None = None,
    store: CounterStore | None = None,
    clock: Clock | None = None,
) -> Limiter:
    """
    Build a limiter from configuration.

    Loads rules from ``settings.rules_path`` and uses the global store
    unless given explicitly.

    Raises:
        ConfigurationError: If the rules file is missing or invalid
    """
    return Limiter(
        registry=registry if registry is not None else RuleRegistry.from_file(settings.rules_path),
        store=store if store is not None else get_store(),
        clock=clock,
        timeout_seconds=settings.store_timeout_seconds,
    )
