"""Value types shared by the rule registry, algorithms and limiter."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ConfigurationError(ValueError):
    """Invalid rule parameters or an unknown rule id. Fatal at startup."""

    pass


class Algorithm(str, Enum):
    """Supported admission algorithms."""

    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW = "sliding_window"


class FallbackPolicy(str, Enum):
    """What to decide when the counter store cannot be reached."""

    FAIL_OPEN = "fail_open"  # Allow, preserve availability
    FAIL_CLOSED = "fail_closed"  # Reject, preserve protection


def _is_positive_number(value: Any) -> bool:
    """True for finite int/float values above zero (bools excluded)."""
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


@dataclass(frozen=True)
class Rule:
    """
    A quota assigned to a client identity.

    Rules are immutable. Validation happens in ``__post_init__`` so an
    invalid rule can never be registered.
    """

    rule_id: str
    """Identifier reported back as ``Verdict.limited_by``."""

    capacity: int
    """Bucket size (token bucket) or requests per window (sliding window)."""

    algorithm: Algorithm = Algorithm.TOKEN_BUCKET

    refill_rate_per_second: float | None = None
    """Tokens added per second. Required for token bucket."""

    window_seconds: int | None = None
    """Window length. Required for sliding window."""

    fallback_policy: FallbackPolicy | None = None
    """Explicit fallback. ``None`` derives it from ``auth_endpoint``."""

    auth_endpoint: bool = False
    """Rule guards an authentication/credential endpoint."""

    def __post_init__(self) -> None:
        if not self.rule_id or ":" in self.rule_id or any(c.isspace() for c in self.rule_id):
            raise ConfigurationError(
                f"Invalid rule id {self.rule_id!r}: must be non-empty without ':' or whitespace"
            )
        if not isinstance(self.algorithm, Algorithm):
            try:
                object.__setattr__(self, "algorithm", Algorithm(self.algorithm))
            except ValueError:
                raise ConfigurationError(
                    f"Rule {self.rule_id}: unknown algorithm {self.algorithm!r}"
                ) from None
        if self.fallback_policy is not None and not isinstance(self.fallback_policy, FallbackPolicy):
            try:
                object.__setattr__(self, "fallback_policy", FallbackPolicy(self.fallback_policy))
            except ValueError:
                raise ConfigurationError(
                    f"Rule {self.rule_id}: unknown fallback policy {self.fallback_policy!r}"
                ) from None

        if isinstance(self.capacity, bool) or not isinstance(self.capacity, int) or self.capacity <= 0:
            raise ConfigurationError(f"Rule {self.rule_id}: capacity must be a positive integer")

        if self.algorithm is Algorithm.TOKEN_BUCKET:
            if not _is_positive_number(self.refill_rate_per_second):
                raise ConfigurationError(
                    f"Rule {self.rule_id}: token bucket requires refill_rate_per_second > 0"
                )
        elif not _is_positive_number(self.window_seconds):
            raise ConfigurationError(
                f"Rule {self.rule_id}: sliding window requires window_seconds > 0"
            )

        for field_name in ("refill_rate_per_second", "window_seconds"):
            value = getattr(self, field_name)
            if value is not None and not _is_positive_number(value):
                raise ConfigurationError(
                    f"Rule {self.rule_id}: {field_name} must be a positive finite number"
                )

    @property
    def effective_fallback(self) -> FallbackPolicy:
        """Fallback policy after applying the auth-endpoint default."""
        if self.fallback_policy is not None:
            return self.fallback_policy
        if self.auth_endpoint:
            return FallbackPolicy.FAIL_CLOSED
        return FallbackPolicy.FAIL_OPEN

    @property
    def idle_ttl_seconds(self) -> int:
        """Seconds of inactivity after which stored state may be evicted."""
        horizon = 0.0
        if self.window_seconds:
            horizon = float(self.window_seconds)
        if self.refill_rate_per_second:
            horizon = max(horizon, self.capacity / self.refill_rate_per_second)
        return max(1, math.ceil(horizon * 2))

    def to_dict(self) -> dict[str, Any]:
        return {
            "capacity": self.capacity,
            "algorithm": self.algorithm.value,
            "refill_rate_per_second": self.refill_rate_per_second,
            "window_seconds": self.window_seconds,
            "fallback_policy": self.effective_fallback.value,
            "auth_endpoint": self.auth_endpoint,
        }

    @classmethod
    def from_dict(cls, rule_id: str, data: dict[str, Any]) -> Rule:
        if not isinstance(data, dict):
            raise ConfigurationError(f"Rule {rule_id}: expected an object, got {type(data).__name__}")
        unknown = set(data) - {
            "capacity",
            "algorithm",
            "refill_rate_per_second",
            "window_seconds",
            "fallback_policy",
            "auth_endpoint",
        }
        if unknown:
            raise ConfigurationError(f"Rule {rule_id}: unknown fields {sorted(unknown)}")
        if "capacity" not in data:
            raise ConfigurationError(f"Rule {rule_id}: capacity is required")

        return cls(
            rule_id=rule_id,
            capacity=data["capacity"],
            algorithm=data.get("algorithm", Algorithm.TOKEN_BUCKET.value),
            refill_rate_per_second=data.get("refill_rate_per_second"),
            window_seconds=data.get("window_seconds"),
            fallback_policy=data.get("fallback_policy"),
            auth_endpoint=bool(data.get("auth_endpoint", False)),
        )


@dataclass
class BucketState:
    """Stored token bucket state for one key."""

    tokens: float
    last_refill: float

    def to_dict(self) -> dict[str, float]:
        return {"tokens": self.tokens, "last_refill": self.last_refill}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BucketState:
        return cls(tokens=float(data["tokens"]), last_refill=float(data["last_refill"]))


@dataclass
class WindowState:
    """Stored sliding window counter state for one key."""

    window_start: float
    """Start of the current window, aligned to a multiple of the window size."""

    current_count: int = 0
    previous_count: int = 0

    def to_dict(self) -> dict[str, float | int]:
        return {
            "window_start": self.window_start,
            "current_count": self.current_count,
            "previous_count": self.previous_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WindowState:
        return cls(
            window_start=float(data["window_start"]),
            current_count=int(data["current_count"]),
            previous_count=int(data["previous_count"]),
        )


@dataclass(frozen=True)
class Verdict:
    """Result of an admission check. Produced per call, never stored."""

    allowed: bool
    """Whether the request may proceed."""

    remaining: int
    """Estimated requests left before rejection."""

    retry_after_seconds: float
    """Suggested wait before retrying; 0 when allowed."""

    limited_by: str
    """Id of the rule that produced this verdict."""

    limit: int = 0
    """Capacity of the rule."""

    fallback: bool = False
    """True when the store was unavailable and the fallback policy decided."""

    @property
    def retry_after_header(self) -> int:
        """Whole seconds for a ``Retry-After`` header."""
        return math.ceil(self.retry_after_seconds)

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_header)
        return headers

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "retry_after_seconds": self.retry_after_seconds,
            "limited_by": self.limited_by,
            "limit": self.limit,
            "fallback": self.fallback,
        }
