"""
Gatekeeper: distributed request rate limiting and admission control.

Decides, per request, whether a client may proceed under its quota,
sharing counters across instances through a pluggable counter store.
"""

from gatekeeper.algorithms import SlidingWindowCounter, TokenBucket
from gatekeeper.clock import Clock, ManualClock, MonotonicClock, SystemClock
from gatekeeper.limiter import Limiter, LimiterStats, create_limiter
from gatekeeper.models import Algorithm, FallbackPolicy, Rule, Verdict
from gatekeeper.rules import ConfigurationError, RuleRegistry, UnknownRuleError
from gatekeeper.store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    StoreUnavailable,
)

__version__ = "0.1.0"

__all__ = [
    "Algorithm",
    "Clock",
    "ConfigurationError",
    "CounterStore",
    "FallbackPolicy",
    "InMemoryCounterStore",
    "Limiter",
    "LimiterStats",
    "ManualClock",
    "MonotonicClock",
    "RedisCounterStore",
    "Rule",
    "RuleRegistry",
    "SlidingWindowCounter",
    "StoreUnavailable",
    "SystemClock",
    "TokenBucket",
    "UnknownRuleError",
    "Verdict",
    "create_limiter",
]
