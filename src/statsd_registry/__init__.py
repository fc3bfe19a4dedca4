"""StatsD Registry.

Step-windowed instruments published as StatsD lines:
- Counter, Gauge, Timer, DistributionSummary, LongTaskTimer
- Etsy, Datadog, Telegraf and Sysdig flavors
- Non-blocking line publisher
"""

from statsd_registry.clock import Clock, MockClock, SystemClock
from statsd_registry.config import StatsdSettings, get_settings
from statsd_registry.core import (
    Counter,
    DistributionSummary,
    Gauge,
    LongTaskTimer,
    LongTaskTimerSample,
    MeterKind,
    MetricIdentity,
    Statistic,
    Tag,
    Timer,
    TimeUnit,
    bucket_tag,
    format_number,
)
from statsd_registry.flavors import (
    LineBuilder,
    NameMapper,
    NamingConvention,
    StatsdFlavor,
    encode_line,
    line_builder_for,
)
from statsd_registry.publisher import (
    LinePublisher,
    LineSink,
    PublisherState,
    PublisherStats,
    logging_sink,
)
from statsd_registry.registry import StatsdMeterRegistry
from statsd_registry.step import AggregatorState, StepAggregator

__all__ = [
    # Clock
    "Clock",
    "MockClock",
    "SystemClock",
    # Config
    "StatsdSettings",
    "get_settings",
    # Core
    "Counter",
    "DistributionSummary",
    "Gauge",
    "LongTaskTimer",
    "LongTaskTimerSample",
    "MeterKind",
    "MetricIdentity",
    "Statistic",
    "Tag",
    "Timer",
    "TimeUnit",
    "bucket_tag",
    "format_number",
    # Flavors
    "LineBuilder",
    "NameMapper",
    "NamingConvention",
    "StatsdFlavor",
    "encode_line",
    "line_builder_for",
    # Publishing
    "LinePublisher",
    "LineSink",
    "PublisherState",
    "PublisherStats",
    "logging_sink",
    "AggregatorState",
    "StepAggregator",
    # Registry
    "StatsdMeterRegistry",
]
