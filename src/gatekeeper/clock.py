"""
Time sources for the admission algorithms.

All clocks return seconds as a float. The algorithms never call
``time`` directly so tests and simulations can drive time by hand.
"""

from abc import ABC, abstractmethod
import time


class Clock(ABC):
    """Abstract time source."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""
        ...


class SystemClock(Clock):
    """
    Wall-clock time.

    Default clock: timestamps written to a shared store must be
    comparable between server instances, which a monotonic clock
    does not guarantee.
    """

    def now(self) -> float:
        return time.time()


class MonotonicClock(Clock):
    """Monotonic time. Only meaningful for a single-process store."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def set(self, value: float) -> None:
        """Jump to an absolute time."""
        self._now = float(value)

    def advance(self, seconds: float) -> float:
        """Move forward by ``seconds`` and return the new time."""
        self._now += seconds
        return self._now
