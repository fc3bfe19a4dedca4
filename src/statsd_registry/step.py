"""Step Aggregator.

Drives step boundaries:
- Detects boundary crossings on the injected clock
- Renders every registered instrument's step snapshot
- Hands lines to the publisher, then resets step accumulators
"""

from __future__ import annotations

import logging
import math
import threading
from enum import Enum
from typing import Callable, Dict, Iterable, List, Tuple

from statsd_registry.clock import Clock
from statsd_registry.core import (
    CounterSnapshot,
    DistributionSnapshot,
    GaugeSnapshot,
    LongTaskTimerSnapshot,
    Meter,
    MeterKind,
    MetricIdentity,
    Statistic,
    StepSnapshot,
    bucket_tag,
)
from statsd_registry.flavors import LineBuilder

logger = logging.getLogger(__name__)

UNIT_COUNTER = "c"
UNIT_GAUGE = "g"
UNIT_TIMER = "ms"
UNIT_HISTOGRAM = "h"

HISTOGRAM_SUFFIX = ".histogram"


class AggregatorState(Enum):
    """Aggregator lifecycle states."""
    RUNNING = "running"
    STOPPED = "stopped"


class StepAggregator:
    """Publishes one batch of lines per elapsed step."""

    def __init__(
        self,
        builder: LineBuilder,
        clock: Clock,
        step_ms: float,
        meters: Callable[[], Iterable[Meter]],
        offer: Callable[[str], bool],
        publish_unchanged_meters: bool = True,
    ):
        if step_ms <= 0:
            raise ValueError(f"Step must be positive, got {step_ms}ms")
        self._builder = builder
        self._clock = clock
        self._step_ms = step_ms
        self._meters = meters
        self._offer = offer
        self._publish_unchanged = publish_unchanged_meters
        self._state = AggregatorState.RUNNING
        self._last_step = self._step_index()
        self._last_gauges: Dict[MetricIdentity, float] = {}
        # one flush at a time; writers never take this lock
        self._flush_lock = threading.Lock()
        self._renderers: Dict[type, Callable[[StepSnapshot], List[str]]] = {
            CounterSnapshot: self._counter_lines,
            GaugeSnapshot: self._gauge_lines,
            DistributionSnapshot: self._distribution_lines,
            LongTaskTimerSnapshot: self._long_task_lines,
        }

    @property
    def state(self) -> AggregatorState:
        return self._state

    @property
    def step_ms(self) -> float:
        return self._step_ms

    def _step_index(self) -> int:
        return int(self._clock.wall_time() // self._step_ms)

    def poll(self) -> int:
        """Flush if a step boundary has passed. Returns lines published."""
        if self._state is AggregatorState.STOPPED:
            return 0
        with self._flush_lock:
            if self._state is AggregatorState.STOPPED:
                return 0
            current = self._step_index()
            if current <= self._last_step:
                return 0
            self._last_step = current
            return self._flush_locked()

    def flush(self) -> int:
        """Publish the current step immediately."""
        if self._state is AggregatorState.STOPPED:
            return 0
        with self._flush_lock:
            if self._state is AggregatorState.STOPPED:
                return 0
            return self._flush_locked()

    def stop(self) -> None:
        with self._flush_lock:
            self._state = AggregatorState.STOPPED

    def _flush_locked(self) -> int:
        taken: List[Tuple[Meter, StepSnapshot]] = []
        lines: List[str] = []
        for meter in list(self._meters()):
            snapshot = meter.snapshot()
            taken.append((meter, snapshot))
            try:
                lines.extend(self._renderers[type(snapshot)](snapshot))
            except Exception:
                logger.warning(f"Failed to render {snapshot.identity.name}, skipping", exc_info=True)

        for line in lines:
            self._offer(line)

        for meter, snapshot in taken:
            meter.reset(snapshot)

        if lines:
            logger.debug(f"Published {len(lines)} lines for step {self._last_step}")
        return len(lines)

    def _line(self, identity, value, unit, statistic=None) -> str:
        return self._builder.render(identity, value, unit, statistic)

    def _counter_lines(self, snapshot: CounterSnapshot) -> List[str]:
        delta = math.trunc(snapshot.delta)
        if delta == 0 and not self._publish_unchanged:
            return []
        return [self._line(snapshot.identity, delta, UNIT_COUNTER, Statistic.COUNT.tag())]

    def _gauge_lines(self, snapshot: GaugeSnapshot) -> List[str]:
        value = snapshot.value
        if math.isnan(value) or math.isinf(value):
            return []
        if not self._publish_unchanged:
            if self._last_gauges.get(snapshot.identity) == value:
                return []
            self._last_gauges[snapshot.identity] = value
        return [self._line(snapshot.identity, value, UNIT_GAUGE, Statistic.VALUE.tag())]

    def _distribution_lines(self, snapshot: DistributionSnapshot) -> List[str]:
        """Step mean as a single sample, then one line per SLA bucket.

        The server sees one ``ms``/``h`` sample per step whatever the step
        count was, so its own count of samples is not the record count.
        Bucket lines carry cumulative counts for consumers that need them.
        """
        unit = UNIT_TIMER if snapshot.kind is MeterKind.TIMER else UNIT_HISTOGRAM
        lines = []
        if snapshot.count:
            lines.append(self._line(snapshot.identity, snapshot.mean, unit))
        if snapshot.buckets:
            histogram = MetricIdentity(snapshot.identity.name + HISTOGRAM_SUFFIX, snapshot.identity.tags)
            for boundary, count in snapshot.buckets:
                lines.append(self._line(histogram, count, UNIT_HISTOGRAM, bucket_tag(boundary)))
        return lines

    def _long_task_lines(self, snapshot: LongTaskTimerSnapshot) -> List[str]:
        return [
            self._line(snapshot.identity, snapshot.active_tasks, UNIT_GAUGE, Statistic.ACTIVE_TASKS.tag()),
            self._line(snapshot.identity, snapshot.duration_ms, UNIT_GAUGE, Statistic.DURATION.tag()),
        ]
