"""Runtime settings for the StatsD registry.

Values come from the environment with the ``STATSD_`` prefix, e.g.
``STATSD_FLAVOR=telegraf`` or ``STATSD_STEP=PT30S``.
"""

from datetime import timedelta
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from statsd_registry.flavors import StatsdFlavor


class StatsdSettings(BaseSettings):
    FLAVOR: StatsdFlavor = StatsdFlavor.DATADOG
    ENABLED: bool = True

    # Step window for deltas and decaying buckets
    STEP: timedelta = timedelta(minutes=1)
    # How often the background ticker checks for a step boundary
    POLLING_FREQUENCY: timedelta = timedelta(seconds=10)

    # When False, zero counter deltas and unchanged gauges are skipped
    PUBLISH_UNCHANGED_METERS: bool = True

    # 0 = unbounded line queue
    MAX_QUEUE_SIZE: int = 0

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="STATSD_",
        case_sensitive=False,
    )

    @field_validator("STEP", "POLLING_FREQUENCY")
    @classmethod
    def _positive(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("must be a positive duration")
        return value

    @field_validator("MAX_QUEUE_SIZE")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @property
    def step_ms(self) -> float:
        return self.STEP.total_seconds() * 1000.0


_settings_cache: Optional[StatsdSettings] = None


def get_settings() -> StatsdSettings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = StatsdSettings()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
