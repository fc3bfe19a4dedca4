"""End-to-end tests for StatsdMeterRegistry line publishing."""

import logging
import time
from datetime import timedelta

import pytest

from statsd_registry.config import StatsdSettings
from statsd_registry.core import Counter, Gauge, TimeUnit
from statsd_registry.flavors import StatsdFlavor
from statsd_registry.publisher import PublisherState
from statsd_registry.registry import StatsdMeterRegistry


ALL_FLAVORS = list(StatsdFlavor)


class TestCounterLineProtocol:
    """Counter increments publish a delta at the next step."""

    @pytest.mark.parametrize(
        "flavor,expected",
        [
            (StatsdFlavor.ETSY, "myCounter.myTag.val.statistic.count:2|c"),
            (StatsdFlavor.DATADOG, "my.counter:2|c|#statistic:count,my.tag:val"),
            (StatsdFlavor.TELEGRAF, "my_counter,statistic=count,my_tag=val:2|c"),
            (StatsdFlavor.SYSDIG, "my.counter#statistic=count,my.tag=val:2|c"),
        ],
    )
    def test_counter_line(self, make_registry, publish_step, lines, flavor, expected):
        registry = make_registry(flavor)
        registry.counter("my.counter", ["my.tag", "val"]).increment(2.1)

        publish_step(registry)

        assert lines == [expected]

    def test_nothing_published_before_step(self, make_registry, lines):
        """An increment alone never emits a line."""
        registry = make_registry()
        registry.counter("my.counter").increment(3)

        assert registry.poll() == 0
        assert registry.publisher.drain(timeout=5)
        assert lines == []

    def test_sum_of_increments_then_zero(self, make_registry, publish_step, lines):
        """N increments publish their sum; an idle step publishes 0."""
        registry = make_registry(StatsdFlavor.DATADOG)
        counter = registry.counter("hits")
        for _ in range(5):
            counter.increment(2)

        publish_step(registry)
        publish_step(registry)

        assert lines == [
            "hits:10|c|#statistic:count",
            "hits:0|c|#statistic:count",
        ]

    def test_unchanged_counter_skipped_when_disabled(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.DATADOG, PUBLISH_UNCHANGED_METERS=False)
        registry.counter("hits").increment()

        publish_step(registry)
        publish_step(registry)

        assert lines == ["hits:1|c|#statistic:count"]


class TestGaugeLineProtocol:
    """Gauges publish their current value every step."""

    @pytest.mark.parametrize(
        "flavor,expected",
        [
            (StatsdFlavor.ETSY, "myGauge.myTag.val.statistic.value:2|g"),
            (StatsdFlavor.DATADOG, "my.gauge:2|g|#statistic:value,my.tag:val"),
            (StatsdFlavor.TELEGRAF, "my_gauge,statistic=value,my_tag=val:2|g"),
            (StatsdFlavor.SYSDIG, "my.gauge#statistic=value,my.tag=val:2|g"),
        ],
    )
    def test_gauge_line(self, make_registry, publish_step, lines, flavor, expected):
        registry = make_registry(flavor)
        n = [2]
        registry.gauge("my.gauge", {"my.tag": "val"}, lambda: n[0])

        publish_step(registry)

        assert lines == [expected]

    def test_last_value_within_step_wins(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.TELEGRAF)
        gauge = registry.gauge("temp")
        for value in (1, 7, 3):
            gauge.set(value)

        publish_step(registry)

        assert lines == ["temp,statistic=value:3|g"]

    def test_gauge_not_reset_between_steps(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.SYSDIG)
        registry.gauge("temp").set(4.5)

        publish_step(registry)
        publish_step(registry)

        assert lines == ["temp#statistic=value:4.5|g"] * 2

    def test_unset_gauge_publishes_nothing(self, make_registry, publish_step, lines):
        registry = make_registry()
        registry.gauge("temp")

        publish_step(registry)

        assert lines == []

    def test_unchanged_gauge_skipped_when_disabled(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.DATADOG, PUBLISH_UNCHANGED_METERS=False)
        gauge = registry.gauge("temp")
        gauge.set(1)

        publish_step(registry)
        publish_step(registry)
        gauge.set(2)
        publish_step(registry)

        assert lines == [
            "temp:1|g|#statistic:value",
            "temp:2|g|#statistic:value",
        ]


class TestTimerAndSummaryLineProtocol:
    """Timers and summaries publish one value line per step."""

    @pytest.mark.parametrize(
        "flavor,expected",
        [
            (StatsdFlavor.ETSY, "myTimer.myTag.val:1|ms"),
            (StatsdFlavor.DATADOG, "my.timer:1|ms|#my.tag:val"),
            (StatsdFlavor.TELEGRAF, "my_timer,my_tag=val:1|ms"),
            (StatsdFlavor.SYSDIG, "my.timer#my.tag=val:1|ms"),
        ],
    )
    def test_timer_line(self, make_registry, publish_step, lines, flavor, expected):
        registry = make_registry(flavor)
        registry.timer("my.timer", ["my.tag", "val"]).record(1, TimeUnit.MILLISECONDS)

        publish_step(registry)

        assert lines == [expected]

    @pytest.mark.parametrize(
        "flavor,expected",
        [
            (StatsdFlavor.ETSY, "mySummary.myTag.val:1|h"),
            (StatsdFlavor.DATADOG, "my.summary:1|h|#my.tag:val"),
            (StatsdFlavor.TELEGRAF, "my_summary,my_tag=val:1|h"),
            (StatsdFlavor.SYSDIG, "my.summary#my.tag=val:1|h"),
        ],
    )
    def test_summary_line(self, make_registry, publish_step, lines, flavor, expected):
        registry = make_registry(flavor)
        registry.summary("my.summary", ["my.tag", "val"]).record(1)

        publish_step(registry)

        assert lines == [expected]

    def test_empty_step_publishes_no_value_line(self, make_registry, publish_step, lines):
        registry = make_registry()
        registry.timer("idle")

        publish_step(registry)

        assert lines == []

    def test_value_line_is_step_mean(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.DATADOG)
        summary = registry.summary("size")
        summary.record(1)
        summary.record(4)

        publish_step(registry)

        assert lines == ["size:2.5|h"]
        assert summary.count() == 2
        assert summary.max() == 4


class TestSlaHistogram:
    """SLA buckets publish after the value line and decay every step."""

    def test_bucket_lines_follow_value_line(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.DATADOG)
        summary = registry.summary("my.summary", sla=[2, 1])
        summary.record(1)

        publish_step(registry)

        assert lines == [
            "my.summary:1|h",
            "my.summary.histogram:1|h|#le:1",
            "my.summary.histogram:1|h|#le:2",
        ]

    @pytest.mark.parametrize("flavor", ALL_FLAVORS)
    def test_slas_only_decay(self, make_registry, publish_step, flavor):
        """Bucket counts read 1 during the step and 0 after it."""
        registry = make_registry(flavor)
        summary = registry.summary("my.summary", sla=[1, 2])
        summary.record(1)
        timer = registry.timer("my.timer", sla=[timedelta(milliseconds=1)])
        timer.record(1, TimeUnit.MILLISECONDS)

        assert summary.bucket_counts() == {1.0: 1, 2.0: 1}
        assert timer.bucket_counts() == {1.0: 1}

        publish_step(registry)

        assert summary.bucket_counts() == {1.0: 0, 2.0: 0}
        assert timer.bucket_counts() == {1.0: 0}

    def test_bucket_reads_follow_the_clock(self, make_registry, clock, lines):
        """Reads decay once the step has passed, even before the next poll."""
        registry = make_registry(StatsdFlavor.DATADOG)
        summary = registry.summary("my.summary", sla=[1, 2])
        summary.record(1)
        bucket = registry.get_meter("my.summary.histogram", {"le": "1"})

        assert bucket.value() == 1

        clock.add(registry.config.STEP)

        assert summary.bucket_counts() == {1.0: 0, 2.0: 0}
        assert bucket.value() == 0

        registry.poll()
        assert registry.publisher.drain(timeout=5)
        assert lines == [
            "my.summary:1|h",
            "my.summary.histogram:1|h|#le:1",
            "my.summary.histogram:1|h|#le:2",
        ]

    def test_empty_steps_report_zero(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.TELEGRAF)
        registry.timer("lat", sla=[timedelta(milliseconds=5)]).record(3)

        publish_step(registry)
        publish_step(registry)
        publish_step(registry)

        assert lines == [
            "lat:3|ms",
            "lat_histogram,le=5:1|h",
            "lat_histogram,le=5:0|h",
            "lat_histogram,le=5:0|h",
        ]


class TestLongTaskTimerLineProtocol:
    """Long task timers publish active tasks then duration."""

    @pytest.mark.parametrize(
        "flavor,expected",
        [
            (
                StatsdFlavor.ETSY,
                [
                    "myLongTask.myTag.val.statistic.activeTasks:1|g",
                    "myLongTask.myTag.val.statistic.duration:60000|g",
                ],
            ),
            (
                StatsdFlavor.DATADOG,
                [
                    "my.long.task:1|g|#statistic:activeTasks,my.tag:val",
                    "my.long.task:60000|g|#statistic:duration,my.tag:val",
                ],
            ),
            (
                StatsdFlavor.TELEGRAF,
                [
                    "my_long_task,statistic=activeTasks,my_tag=val:1|g",
                    "my_long_task,statistic=duration,my_tag=val:60000|g",
                ],
            ),
            (
                StatsdFlavor.SYSDIG,
                [
                    "my.long.task#statistic=activeTasks,my.tag=val:1|g",
                    "my.long.task#statistic=duration,my.tag=val:60000|g",
                ],
            ),
        ],
    )
    def test_long_task_lines(self, make_registry, publish_step, lines, flavor, expected):
        registry = make_registry(flavor)
        ltt = registry.long_task_timer("my.long.task", ["my.tag", "val"])
        ltt.start()

        publish_step(registry)

        assert lines == expected

    def test_values_rederived_each_step(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.DATADOG, STEP=timedelta(seconds=10))
        ltt = registry.long_task_timer("job")
        sample = ltt.start()

        publish_step(registry)
        publish_step(registry)
        sample.stop()
        publish_step(registry)

        assert lines == [
            "job:1|g|#statistic:activeTasks",
            "job:10000|g|#statistic:duration",
            "job:1|g|#statistic:activeTasks",
            "job:20000|g|#statistic:duration",
            "job:0|g|#statistic:activeTasks",
            "job:0|g|#statistic:duration",
        ]


class TestCustomNameMapper:
    """Name mapper overrides."""

    def test_custom_naming_convention(self, make_registry, publish_step, lines):
        registry = make_registry(
            StatsdFlavor.ETSY,
            name_mapper=lambda identity, convention: identity.name.upper(),
        )
        registry.counter("my.counter", ["my.tag", "val"]).increment(2.1)

        publish_step(registry)

        assert lines == ["MY.COUNTER:2|c"]

    def test_failing_mapper_does_not_break_flush(self, make_registry, publish_step, lines):
        def mapper(identity, convention):
            if identity.name == "bad":
                raise RuntimeError("boom")
            return identity.name

        registry = make_registry(StatsdFlavor.ETSY, name_mapper=mapper)
        registry.counter("bad").increment()
        registry.counter("good").increment()

        publish_step(registry)

        assert lines == ["good:1|c"]


class TestEmissionOrder:
    """Lines follow registration order within a step."""

    def test_registration_order(self, make_registry, publish_step, lines):
        registry = make_registry(StatsdFlavor.SYSDIG)
        registry.gauge("b").set(1)
        registry.counter("a").increment()

        publish_step(registry)

        assert lines == ["b#statistic=value:1|g", "a#statistic=count:1|c"]


class TestStepBoundaries:
    """Poll and flush behaviour."""

    def test_several_elapsed_steps_flush_once(self, make_registry, clock, lines):
        registry = make_registry(StatsdFlavor.DATADOG)
        registry.counter("c").increment()

        clock.add(timedelta(minutes=3))

        assert registry.poll() == 1
        assert registry.poll() == 0

    def test_flush_ignores_boundary(self, make_registry, lines):
        registry = make_registry(StatsdFlavor.DATADOG)
        registry.counter("c").increment()

        assert registry.flush() == 1
        assert registry.publisher.drain(timeout=5)
        assert lines == ["c:1|c|#statistic:count"]


class TestRegistryLookup:
    """Get-or-create semantics."""

    def test_same_identity_same_instrument(self, make_registry):
        registry = make_registry()

        a = registry.counter("c", {"k": "v"})
        b = registry.counter("c", ["k", "v"])

        assert a is b
        assert isinstance(registry.get_meter("c", {"k": "v"}), Counter)
        assert len(registry.list_meters()) == 1

    def test_histogram_bucket_lookup(self, make_registry):
        registry = make_registry()
        timer = registry.timer("lat", {"uri": "/a"}, sla=[timedelta(milliseconds=5)])
        registry.counter("hits")
        timer.record(3)

        bucket = registry.get_meter("lat.histogram", {"uri": "/a", "le": "5"})

        assert isinstance(bucket, Gauge)
        assert bucket.value() == 1
        assert registry.get_meter("lat.histogram", {"uri": "/a", "le": "7"}) is None
        assert registry.get_meter("hits.histogram", {"le": "5"}) is None
        assert registry.get_meter("lat.histogram", {"uri": "/a"}) is None
        assert len(registry.list_meters()) == 2

    def test_kind_mismatch_raises(self, make_registry):
        registry = make_registry()
        registry.counter("c")

        with pytest.raises(ValueError, match="is not a Gauge"):
            registry.gauge("c")


class TestLifecycle:
    """Stopped registries accept calls but publish nothing."""

    def test_interact_with_stopped_registry(self, make_registry, clock, lines):
        registry = make_registry()
        registry.stop()

        registry.counter("my.counter").increment()
        registry.timer("my.timer").record(1)
        registry.long_task_timer("ltt").start()
        clock.add(registry.config.STEP)

        assert registry.poll() == 0
        assert registry.flush() == 0
        assert lines == []
        assert registry.is_stopped

    def test_stop_twice(self, make_registry):
        registry = make_registry()
        registry.stop()
        registry.stop()

        assert registry.publisher.state is PublisherState.STOPPED

    def test_lines_queued_before_stop_are_delivered(self, make_registry, lines):
        registry = make_registry(StatsdFlavor.DATADOG)
        registry.counter("c").increment()
        registry.flush()

        registry.stop()

        assert lines == ["c:1|c|#statistic:count"]

    def test_counter_increment_after_publisher_completes(self, make_registry, publish_step, lines):
        """Completing the stream, even with DEBUG logging, leaves increments safe."""
        registry = make_registry()
        log_counter = registry.counter("logback.events")

        class CountingHandler(logging.Handler):
            def emit(self, record):
                log_counter.increment()

        handler = CountingHandler()
        pub_logger = logging.getLogger("statsd_registry.publisher")
        pub_logger.addHandler(handler)
        pub_logger.setLevel(logging.DEBUG)
        try:
            registry.publisher.complete()
            registry.counter("my.counter").increment()
            publish_step(registry)
        finally:
            pub_logger.removeHandler(handler)
            pub_logger.setLevel(logging.NOTSET)

        assert lines == []
        assert registry.publisher_stats.lines_dropped == 2

    def test_context_manager_starts_and_stops(self, clock, lines):
        config = StatsdSettings(FLAVOR=StatsdFlavor.ETSY)

        with StatsdMeterRegistry(config, clock=clock, line_sink=lines.append) as registry:
            registry.counter("c").increment()

        assert registry.is_stopped

    def test_ticker_publishes_without_manual_poll(self, make_registry, clock, lines):
        registry = make_registry(
            STEP=timedelta(milliseconds=200),
            POLLING_FREQUENCY=timedelta(milliseconds=10),
        )
        registry.start()
        registry.counter("c").increment(2)

        clock.add(registry.config.STEP)
        deadline = time.monotonic() + 5
        while not lines and time.monotonic() < deadline:
            time.sleep(0.01)

        assert lines == ["c.statistic.count:2|c"]

    def test_disabled_registry_publishes_nothing(self, make_registry, clock, lines):
        registry = make_registry(ENABLED=False)
        registry.counter("c").increment()
        clock.add(registry.config.STEP)

        assert registry.publisher is None
        assert registry.poll() == 0
        assert lines == []

    def test_sink_failure_never_reaches_caller(self, make_registry, publish_step):
        def broken(line):
            raise OSError("socket closed")

        registry = make_registry(sink=broken)
        registry.counter("c").increment()

        publish_step(registry)

        assert registry.publisher_stats.sink_errors == 1
