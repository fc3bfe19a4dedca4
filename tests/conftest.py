import os
from typing import Callable, List, Optional

import pytest

from statsd_registry.clock import MockClock
from statsd_registry.config import StatsdSettings
from statsd_registry.flavors import NameMapper, StatsdFlavor
from statsd_registry.registry import StatsdMeterRegistry


# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "STATSD_FLAVOR",
    "STATSD_ENABLED",
    "STATSD_STEP",
    "STATSD_POLLING_FREQUENCY",
    "STATSD_PUBLISH_UNCHANGED_METERS",
    "STATSD_MAX_QUEUE_SIZE",
    "STATSD_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    for k in _ENV_VARS_TO_ISOLATE:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


@pytest.fixture(autouse=True)
def config_cache_isolation():
    """Reset config settings cache between tests."""
    from statsd_registry import config as cfg

    backup_cache = cfg._settings_cache
    cfg._settings_cache = None
    yield
    cfg._settings_cache = backup_cache


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def lines() -> List[str]:
    """Sink target; the registry's drain thread appends to it."""
    return []


@pytest.fixture
def make_registry(clock, lines):
    """Build registries wired to the mock clock and list sink; stops them afterwards."""
    created: List[StatsdMeterRegistry] = []

    def factory(
        flavor: StatsdFlavor = StatsdFlavor.ETSY,
        name_mapper: Optional[NameMapper] = None,
        sink: Optional[Callable[[str], None]] = None,
        **settings,
    ) -> StatsdMeterRegistry:
        config = StatsdSettings(FLAVOR=flavor, **settings)
        registry = StatsdMeterRegistry(
            config,
            clock=clock,
            line_sink=sink or lines.append,
            name_mapper=name_mapper,
        )
        created.append(registry)
        return registry

    yield factory

    for registry in created:
        registry.stop()


@pytest.fixture
def publish_step(clock):
    """Advance one step, poll and wait for the drain thread."""

    def advance(registry: StatsdMeterRegistry) -> int:
        clock.add(registry.config.STEP)
        published = registry.poll()
        assert registry.publisher is not None
        assert registry.publisher.drain(timeout=5)
        return published

    return advance
