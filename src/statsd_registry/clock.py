"""Clock abstraction.

Provides time sources for step windows:
- SystemClock for production use
- MockClock for virtual-time tests
"""

from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Protocol, Union, runtime_checkable

Duration = Union[timedelta, float, int]


def to_millis(duration: Duration) -> float:
    """Convert a duration (timedelta or seconds) to milliseconds."""
    if isinstance(duration, timedelta):
        return duration.total_seconds() * 1000.0
    return float(duration) * 1000.0


@runtime_checkable
class Clock(Protocol):
    """Time source used by the registry."""

    def wall_time(self) -> int:
        """Current wall time in milliseconds."""
        ...

    def monotonic_time(self) -> int:
        """Current monotonic time in nanoseconds."""
        ...


class SystemClock:
    """Clock backed by the interpreter's time functions."""

    def wall_time(self) -> int:
        return time.time_ns() // 1_000_000

    def monotonic_time(self) -> int:
        return time.monotonic_ns()


class MockClock:
    """Manually advanced clock for deterministic step tests."""

    def __init__(self, wall_ms: int = 1, monotonic_ns: int = 1):
        # wall time is kept in nanoseconds so sub-millisecond adds accumulate
        self._wall_ns = wall_ms * 1_000_000
        self._monotonic_ns = monotonic_ns
        self._lock = threading.Lock()

    def wall_time(self) -> int:
        with self._lock:
            return self._wall_ns // 1_000_000

    def monotonic_time(self) -> int:
        with self._lock:
            return self._monotonic_ns

    def add(self, duration: Duration) -> int:
        """Advance both time sources; returns the new wall time."""
        nanos = int(round(to_millis(duration) * 1_000_000))
        with self._lock:
            self._monotonic_ns += nanos
            self._wall_ns += nanos
            return self._wall_ns // 1_000_000


SYSTEM = SystemClock()
