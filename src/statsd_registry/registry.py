"""StatsD Meter Registry.

Provides the registry facade:
- Get-or-create instruments by identity
- Step ticker thread driving the aggregator
- Lifecycle (running -> stopped)
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Type, TypeVar, Union

from statsd_registry.clock import SYSTEM, Clock, to_millis
from statsd_registry.config import StatsdSettings, get_settings
from statsd_registry.core import (
    Counter,
    DistributionSummary,
    Gauge,
    LongTaskTimer,
    Meter,
    MetricIdentity,
    TagsLike,
    Timer,
    bucket_tag,
)
from statsd_registry.flavors import NameMapper, line_builder_for
from statsd_registry.publisher import LinePublisher, LineSink, PublisherStats, logging_sink
from statsd_registry.step import HISTOGRAM_SUFFIX, StepAggregator

logger = logging.getLogger(__name__)

M = TypeVar("M")


class StatsdMeterRegistry:
    """Registry publishing step-aggregated instruments as StatsD lines."""

    def __init__(
        self,
        config: Optional[StatsdSettings] = None,
        clock: Optional[Clock] = None,
        line_sink: Optional[LineSink] = None,
        name_mapper: Optional[NameMapper] = None,
    ):
        self._config = config or get_settings()
        self._clock = clock or SYSTEM
        self._meters: Dict[MetricIdentity, Meter] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._ticker: Optional[threading.Thread] = None
        self._stopped = False

        builder = line_builder_for(self._config.FLAVOR, name_mapper)

        self.publisher: Optional[LinePublisher] = None
        if self._config.ENABLED:
            self.publisher = LinePublisher(
                line_sink or logging_sink,
                max_queue_size=self._config.MAX_QUEUE_SIZE,
            )

        self._aggregator = StepAggregator(
            builder=builder,
            clock=self._clock,
            step_ms=self._config.step_ms,
            meters=self._meter_list,
            offer=self._offer,
            publish_unchanged_meters=self._config.PUBLISH_UNCHANGED_METERS,
        )
        if not self._config.ENABLED:
            self._aggregator.stop()

    @property
    def config(self) -> StatsdSettings:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def publisher_stats(self) -> PublisherStats:
        return self.publisher.stats if self.publisher else PublisherStats()

    # -- instruments -------------------------------------------------------

    def _get_or_create(
        self,
        cls: Type[M],
        name: str,
        tags: TagsLike,
        factory: Callable[[MetricIdentity], M],
    ) -> M:
        identity = MetricIdentity.of(name, tags)
        with self._lock:
            if identity in self._meters:
                meter = self._meters[identity]
                if not isinstance(meter, cls):
                    raise ValueError(f"Metric {name} is not a {cls.__name__}")
                return meter

            meter = factory(identity)
            self._meters[identity] = meter  # type: ignore[assignment]
            return meter

    def counter(self, name: str, tags: TagsLike = None) -> Counter:
        """Get or create a counter."""
        return self._get_or_create(Counter, name, tags, Counter)

    def gauge(
        self,
        name: str,
        tags: TagsLike = None,
        supplier: Optional[Callable[[], float]] = None,
    ) -> Gauge:
        """Get or create a gauge, optionally bound to a value supplier."""
        return self._get_or_create(Gauge, name, tags, lambda i: Gauge(i, supplier))

    def timer(
        self,
        name: str,
        tags: TagsLike = None,
        sla: Iterable[Union[float, timedelta]] = (),
    ) -> Timer:
        """Get or create a timer. SLA boundaries are fixed at creation."""
        return self._get_or_create(
            Timer, name, tags, lambda i: Timer(i, self._clock, sla, self._config.step_ms)
        )

    def summary(
        self,
        name: str,
        tags: TagsLike = None,
        sla: Iterable[float] = (),
    ) -> DistributionSummary:
        """Get or create a distribution summary."""
        return self._get_or_create(
            DistributionSummary,
            name,
            tags,
            lambda i: DistributionSummary(i, sla, self._clock, self._config.step_ms),
        )

    def long_task_timer(self, name: str, tags: TagsLike = None) -> LongTaskTimer:
        """Get or create a long task timer."""
        return self._get_or_create(
            LongTaskTimer, name, tags, lambda i: LongTaskTimer(i, self._clock)
        )

    def get_meter(self, name: str, tags: TagsLike = None) -> Optional[Meter]:
        """Look up a registered meter.

        ``<name>.histogram`` with an ``le`` tag resolves to a read-only gauge
        over that SLA bucket of the timer or summary registered as ``name``.
        """
        identity = MetricIdentity.of(name, tags)
        with self._lock:
            meter = self._meters.get(identity)
        if meter is None:
            return self._bucket_gauge(identity)
        return meter

    def _bucket_gauge(self, identity: MetricIdentity) -> Optional[Gauge]:
        le = identity.tag_value("le")
        if le is None or not identity.name.endswith(HISTOGRAM_SUFFIX):
            return None
        base = MetricIdentity(
            identity.name[: -len(HISTOGRAM_SUFFIX)],
            tuple(tag for tag in identity.tags if tag.key != "le"),
        )
        with self._lock:
            meter = self._meters.get(base)
        if not isinstance(meter, (Timer, DistributionSummary)):
            return None
        for boundary in meter.sla:
            if bucket_tag(boundary).value == le:
                return Gauge(identity, lambda: meter.bucket_counts()[boundary])
        return None

    def list_meters(self) -> List[MetricIdentity]:
        with self._lock:
            return list(self._meters.keys())

    def _meter_list(self) -> List[Meter]:
        with self._lock:
            return list(self._meters.values())

    # -- publishing --------------------------------------------------------

    def _offer(self, line: str) -> bool:
        if self.publisher is None:
            return False
        return self.publisher.offer(line)

    def poll(self) -> int:
        """Publish if a step boundary passed since the last flush."""
        return self._aggregator.poll()

    def flush(self) -> int:
        """Publish the current step now, regardless of the boundary."""
        return self._aggregator.flush()

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the background step ticker."""
        if self._stopped or not self._config.ENABLED or self._ticker is not None:
            return

        self._ticker = threading.Thread(
            target=self._tick_loop, name="statsd-step-ticker", daemon=True
        )
        self._ticker.start()
        logger.info(
            f"StatsD registry started (flavor={self._config.FLAVOR.value}, "
            f"step={self._config.STEP})",
            extra={"flavor": self._config.FLAVOR.value, "step_ms": self._config.step_ms},
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop publishing. Idempotent; no lines are produced afterwards."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True

        self._aggregator.stop()
        self._stop_event.set()
        if self._ticker is not None and self._ticker is not threading.current_thread():
            self._ticker.join(timeout=timeout)
        if self.publisher is not None:
            self.publisher.stop(timeout=timeout)
        logger.info("StatsD registry stopped")

    def close(self) -> None:
        self.stop()

    def __enter__(self) -> "StatsdMeterRegistry":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def _tick_loop(self) -> None:
        interval = min(to_millis(self._config.POLLING_FREQUENCY), self._config.step_ms) / 1000.0
        while not self._stop_event.wait(interval):
            try:
                self._aggregator.poll()
            except Exception as e:
                logger.error(f"Step flush error: {e}", exc_info=True)
