"""StatsD Registry Core.

Provides identities and instruments:
- MetricIdentity, Tag, Statistic
- Counter, Gauge, Timer, DistributionSummary, LongTaskTimer
- Per-step snapshots consumed by the step aggregator
"""

from __future__ import annotations

import bisect
import itertools
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import (
    Callable,
    Dict,
    Iterable,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from statsd_registry.clock import Clock, to_millis

logger = logging.getLogger(__name__)


class Tag(NamedTuple):
    """A single key/value dimension."""
    key: str
    value: str


TagsLike = Union[None, Mapping[str, str], Iterable[Tuple[str, str]], Sequence[str]]


def normalize_tags(tags: TagsLike) -> Tuple[Tag, ...]:
    """Build an ordered, key-unique tag tuple.

    Accepts a mapping, an iterable of (key, value) pairs, or a flat
    ``key, value, key, value`` sequence. A repeated key keeps its first
    position and takes the last value.
    """
    if not tags:
        return ()

    if isinstance(tags, Mapping):
        pairs: Iterable[Tuple[str, str]] = tags.items()
    else:
        items = list(tags)
        if all(isinstance(item, str) for item in items):
            if len(items) % 2:
                raise ValueError(f"Tags must come in key/value pairs, got {len(items)} items")
            pairs = zip(items[0::2], items[1::2])
        else:
            pairs = items

    ordered: Dict[str, str] = {}
    for key, value in pairs:
        ordered[str(key)] = str(value)
    return tuple(Tag(k, v) for k, v in ordered.items())


@dataclass(frozen=True)
class MetricIdentity:
    """Name plus ordered tags identifying one instrument."""
    name: str
    tags: Tuple[Tag, ...] = ()

    @classmethod
    def of(cls, name: str, tags: TagsLike = None) -> "MetricIdentity":
        return cls(name, normalize_tags(tags))

    def with_tag(self, key: str, value: str) -> "MetricIdentity":
        """Return a copy carrying one more tag (replacing an existing key)."""
        return MetricIdentity(self.name, normalize_tags([*self.tags, Tag(key, value)]))

    def tag_value(self, key: str) -> Optional[str]:
        for tag in self.tags:
            if tag.key == key:
                return tag.value
        return None


class Statistic(Enum):
    """Statistic kinds injected at encoding time."""
    COUNT = "count"
    VALUE = "value"
    ACTIVE_TASKS = "activeTasks"
    DURATION = "duration"
    TOTAL = "total"
    MAX = "max"

    def tag(self) -> Tag:
        return Tag("statistic", self.value)


def format_number(value: float) -> str:
    """Shortest plain rendering: integers without a point, else <= 6 decimals."""
    if math.isinf(value) or math.isnan(value):
        return str(value)
    if float(value).is_integer():
        return str(int(value))
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


def bucket_tag(boundary: float) -> Tag:
    """Tag identifying an SLA bucket line."""
    return Tag("le", format_number(boundary))


class MeterKind(Enum):
    """Types of instruments."""
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMER = "timer"
    DISTRIBUTION_SUMMARY = "distribution_summary"
    LONG_TASK_TIMER = "long_task_timer"


class TimeUnit(Enum):
    """Time units accepted by Timer.record, valued in milliseconds."""
    NANOSECONDS = 1e-6
    MICROSECONDS = 1e-3
    MILLISECONDS = 1.0
    SECONDS = 1000.0
    MINUTES = 60_000.0

    def to_millis(self, amount: float) -> float:
        return amount * self.value


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CounterSnapshot:
    identity: MetricIdentity
    total: float
    delta: float


@dataclass(frozen=True)
class GaugeSnapshot:
    identity: MetricIdentity
    value: float


@dataclass(frozen=True)
class DistributionSnapshot:
    """Step values of a timer or summary.

    ``buckets`` holds (boundary, count) pairs in ascending boundary order.
    """
    identity: MetricIdentity
    kind: MeterKind
    count: int
    total: float
    max: float
    buckets: Tuple[Tuple[float, int], ...] = ()

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


@dataclass(frozen=True)
class LongTaskTimerSnapshot:
    identity: MetricIdentity
    active_tasks: int
    duration_ms: float


StepSnapshot = Union[CounterSnapshot, GaugeSnapshot, DistributionSnapshot, LongTaskTimerSnapshot]


# ---------------------------------------------------------------------------
# Instruments
# ---------------------------------------------------------------------------


class Counter:
    """Monotonically increasing counter published as a per-step delta."""

    kind = MeterKind.COUNTER

    def __init__(self, identity: MetricIdentity):
        self.identity = identity
        self._total = 0.0
        self._baseline = 0.0
        self._last_delta = 0.0
        self._lock = threading.Lock()

    def increment(self, amount: float = 1.0) -> None:
        """Increment counter. Negative and NaN amounts are ignored."""
        if not amount > 0:
            return
        with self._lock:
            self._total += amount

    def count(self) -> float:
        """Delta published for the last completed step."""
        return self._last_delta

    def total(self) -> float:
        with self._lock:
            return self._total

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(self.identity, self._total, self._total - self._baseline)

    def reset(self, snapshot: CounterSnapshot) -> None:
        with self._lock:
            self._baseline = snapshot.total
            self._last_delta = snapshot.delta


class Gauge:
    """Current-value instrument, either set directly or bound to a supplier."""

    kind = MeterKind.GAUGE

    def __init__(
        self,
        identity: MetricIdentity,
        supplier: Optional[Callable[[], float]] = None,
    ):
        self.identity = identity
        self._supplier = supplier
        self._value = math.nan
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def value(self) -> float:
        if self._supplier is None:
            with self._lock:
                return self._value
        try:
            return float(self._supplier())
        except Exception as e:
            logger.debug(f"Gauge supplier for {self.identity.name} failed: {e}")
            return math.nan

    def snapshot(self) -> GaugeSnapshot:
        return GaugeSnapshot(self.identity, self.value())

    def reset(self, snapshot: GaugeSnapshot) -> None:
        # gauges are re-read every step
        pass


class _StepDistribution:
    """Count, total, max and SLA buckets collected since the last flush.

    Two sets of bucket counts are kept. ``_buckets`` holds what has not been
    published yet and is consumed by snapshot/reset. ``_window`` backs live
    reads: it covers the current clock step and also decays on flush, so a
    read past a step boundary sees zero even before the next poll.
    """

    def __init__(
        self,
        boundaries: Iterable[float] = (),
        clock: Optional[Clock] = None,
        step_ms: Optional[float] = None,
    ):
        self.boundaries: Tuple[float, ...] = tuple(sorted(set(float(b) for b in boundaries)))
        self._count = 0
        self._total = 0.0
        self._max = 0.0
        self._buckets = [0] * len(self.boundaries)
        self._window = [0] * len(self.boundaries)
        self._clock = clock
        self._step_ms = step_ms
        self._window_step = self._step_index()
        # max of records landing between snapshot() and reset()
        self._pending = False
        self._late_max = 0.0
        self._lock = threading.Lock()

    def _step_index(self) -> Optional[int]:
        if self._clock is None or not self._step_ms:
            return None
        return int(self._clock.wall_time() // self._step_ms)

    def _roll(self, step: Optional[int]) -> None:
        # forward only; a stale index read before the lock must not rewind
        if step is not None and step > self._window_step:
            self._window = [0] * len(self.boundaries)
            self._window_step = step

    def record(self, value: float) -> None:
        if math.isnan(value) or value < 0:
            return
        first = bisect.bisect_left(self.boundaries, value)
        step = self._step_index()
        with self._lock:
            self._roll(step)
            self._count += 1
            self._total += value
            if value > self._max:
                self._max = value
            if self._pending and value > self._late_max:
                self._late_max = value
            for i in range(first, len(self._buckets)):
                self._buckets[i] += 1
                self._window[i] += 1

    def bucket_counts(self) -> Dict[float, int]:
        step = self._step_index()
        with self._lock:
            self._roll(step)
            return dict(zip(self.boundaries, self._window))

    def snapshot(self, identity: MetricIdentity, kind: MeterKind) -> DistributionSnapshot:
        with self._lock:
            self._pending = True
            self._late_max = 0.0
            return DistributionSnapshot(
                identity=identity,
                kind=kind,
                count=self._count,
                total=self._total,
                max=self._max,
                buckets=tuple(zip(self.boundaries, self._buckets)),
            )

    def reset(self, snapshot: DistributionSnapshot) -> None:
        with self._lock:
            self._count -= snapshot.count
            self._total = self._total - snapshot.total if self._count else 0.0
            self._max = self._late_max
            for i, (_, count) in enumerate(snapshot.buckets):
                self._buckets[i] -= count
                # what is left unpublished was recorded after the snapshot
                self._window[i] = min(self._window[i], self._buckets[i])
            self._pending = False
            self._late_max = 0.0


class Timer:
    """Records durations in milliseconds with optional SLA buckets."""

    kind = MeterKind.TIMER

    def __init__(
        self,
        identity: MetricIdentity,
        clock: Clock,
        sla: Iterable[Union[float, timedelta]] = (),
        step_ms: Optional[float] = None,
    ):
        self.identity = identity
        self._clock = clock
        self._dist = _StepDistribution(
            (to_millis(b) if isinstance(b, timedelta) else b for b in sla),
            clock=clock,
            step_ms=step_ms,
        )
        self._last: Optional[DistributionSnapshot] = None

    @property
    def sla(self) -> Tuple[float, ...]:
        return self._dist.boundaries

    def record(
        self,
        amount: Union[float, timedelta],
        unit: TimeUnit = TimeUnit.MILLISECONDS,
    ) -> None:
        if isinstance(amount, timedelta):
            self._dist.record(to_millis(amount))
        else:
            self._dist.record(unit.to_millis(amount))

    def time(self) -> "_TimerContext":
        """Return a context manager timing its block."""
        return _TimerContext(self)

    def count(self) -> int:
        return self._last.count if self._last else 0

    def total_time(self) -> float:
        return self._last.total if self._last else 0.0

    def max(self) -> float:
        return self._last.max if self._last else 0.0

    def bucket_counts(self) -> Dict[float, int]:
        """SLA bucket counts of the step in progress."""
        return self._dist.bucket_counts()

    def snapshot(self) -> DistributionSnapshot:
        return self._dist.snapshot(self.identity, self.kind)

    def reset(self, snapshot: DistributionSnapshot) -> None:
        self._dist.reset(snapshot)
        self._last = snapshot


class _TimerContext:
    """Timer context manager."""

    def __init__(self, timer: Timer):
        self._timer = timer
        self._start: Optional[int] = None

    def __enter__(self) -> "_TimerContext":
        self._start = self._timer._clock.monotonic_time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._start is not None:
            elapsed = self._timer._clock.monotonic_time() - self._start
            self._timer.record(elapsed, TimeUnit.NANOSECONDS)


class DistributionSummary:
    """Records arbitrary non-negative amounts with optional SLA buckets."""

    kind = MeterKind.DISTRIBUTION_SUMMARY

    def __init__(
        self,
        identity: MetricIdentity,
        sla: Iterable[float] = (),
        clock: Optional[Clock] = None,
        step_ms: Optional[float] = None,
    ):
        self.identity = identity
        self._dist = _StepDistribution(sla, clock, step_ms)
        self._last: Optional[DistributionSnapshot] = None

    @property
    def sla(self) -> Tuple[float, ...]:
        return self._dist.boundaries

    def record(self, amount: float) -> None:
        self._dist.record(float(amount))

    def count(self) -> int:
        return self._last.count if self._last else 0

    def total_amount(self) -> float:
        return self._last.total if self._last else 0.0

    def max(self) -> float:
        return self._last.max if self._last else 0.0

    def bucket_counts(self) -> Dict[float, int]:
        """SLA bucket counts of the step in progress."""
        return self._dist.bucket_counts()

    def snapshot(self) -> DistributionSnapshot:
        return self._dist.snapshot(self.identity, self.kind)

    def reset(self, snapshot: DistributionSnapshot) -> None:
        self._dist.reset(snapshot)
        self._last = snapshot


class LongTaskTimer:
    """Tracks in-flight tasks that may span several steps."""

    kind = MeterKind.LONG_TASK_TIMER

    def __init__(self, identity: MetricIdentity, clock: Clock):
        self.identity = identity
        self._clock = clock
        self._tasks: Dict[int, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def start(self) -> "LongTaskTimerSample":
        with self._lock:
            task_id = next(self._ids)
            self._tasks[task_id] = self._clock.monotonic_time()
        return LongTaskTimerSample(self, task_id)

    def _stop(self, task_id: int) -> Optional[float]:
        with self._lock:
            started = self._tasks.pop(task_id, None)
        if started is None:
            return None
        return (self._clock.monotonic_time() - started) / 1_000_000

    def active_tasks(self) -> int:
        with self._lock:
            return len(self._tasks)

    def duration(self) -> float:
        """Summed running time of active tasks, in milliseconds."""
        now = self._clock.monotonic_time()
        with self._lock:
            return sum(now - started for started in self._tasks.values()) / 1_000_000

    def snapshot(self) -> LongTaskTimerSnapshot:
        now = self._clock.monotonic_time()
        with self._lock:
            active = len(self._tasks)
            elapsed = sum(now - started for started in self._tasks.values())
        return LongTaskTimerSnapshot(self.identity, active, elapsed / 1_000_000)

    def reset(self, snapshot: LongTaskTimerSnapshot) -> None:
        # live values, never reset
        pass


@dataclass
class LongTaskTimerSample:
    """Handle for one running task."""
    timer: LongTaskTimer
    task_id: int
    _duration: Optional[float] = field(default=None, repr=False)

    def stop(self) -> Optional[float]:
        """Stop the task; returns elapsed ms, or None if already stopped."""
        if self._duration is not None:
            return None
        self._duration = self.timer._stop(self.task_id)
        return self._duration

    def __enter__(self) -> "LongTaskTimerSample":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


Meter = Union[Counter, Gauge, Timer, DistributionSummary, LongTaskTimer]
