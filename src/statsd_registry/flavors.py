"""StatsD flavor line builders.

One line-builder strategy per dialect:
- Etsy/Graphite: tags and statistic as dotted name segments
- Datadog: ``|#key:value`` tag suffix
- Telegraf: InfluxDB-style ``name,key=value`` prefix
- Sysdig: ``name#key=value`` prefix
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Type, Union

from statsd_registry.core import MetricIdentity, Tag, format_number


class StatsdFlavor(str, Enum):
    """Supported wire dialects."""
    ETSY = "etsy"
    DATADOG = "datadog"
    TELEGRAF = "telegraf"
    SYSDIG = "sysdig"


class NamingConvention(ABC):
    """Normalizes names and tag keys/values for one flavor."""

    @abstractmethod
    def name(self, name: str) -> str:
        pass

    def tag_key(self, key: str) -> str:
        return self.name(key)

    def tag_value(self, value: str) -> str:
        return value


class DotConvention(NamingConvention):
    """Keeps dot-delimited names as they are."""

    def name(self, name: str) -> str:
        return name


class CamelCaseConvention(NamingConvention):
    """``my.long.task`` -> ``myLongTask``."""

    def name(self, name: str) -> str:
        parts = [p for p in name.split(".") if p]
        if not parts:
            return name
        head, rest = parts[0], parts[1:]
        return head + "".join(p[:1].upper() + p[1:] for p in rest)


class SnakeCaseConvention(NamingConvention):
    """``my.counter`` -> ``my_counter``."""

    def name(self, name: str) -> str:
        return name.replace(".", "_")


NameMapper = Callable[[MetricIdentity, NamingConvention], str]


def _sanitizer(chars: str) -> Callable[[str], str]:
    pattern = re.compile("[" + re.escape(chars) + r"\s]")
    return lambda text: pattern.sub("_", text)


class LineBuilder(ABC):
    """Renders one metric event as a single wire line.

    Subclasses supply the naming convention, the sanitizing rules and the
    layout of name, tags and value. When a name mapper is configured it
    receives the identity (with the statistic tag already attached) and
    the flavor's convention, and its result replaces the base name.
    """

    convention: NamingConvention

    def __init__(self, name_mapper: Optional[NameMapper] = None):
        self._name_mapper = name_mapper

    def render(
        self,
        identity: MetricIdentity,
        value: float,
        unit: str,
        statistic: Optional[Tag] = None,
    ) -> str:
        amount = format_number(value)
        if self._name_mapper is not None:
            mapped_id = identity.with_tag(*statistic) if statistic else identity
            name = self._sanitize_name(self._name_mapper(mapped_id, self.convention))
            return self._build_mapped(name, identity, statistic, amount, unit)
        name = self._sanitize_name(self.convention.name(identity.name))
        return self._build(name, identity, statistic, amount, unit)

    def _tags(self, identity: MetricIdentity, statistic: Optional[Tag]) -> List[Tuple[str, str]]:
        """Statistic first, then user tags in declaration order."""
        tags: List[Tuple[str, str]] = []
        if statistic is not None:
            tags.append((statistic.key, self._sanitize_tag_value(statistic.value)))
        for key, value in identity.tags:
            if statistic is not None and key == statistic.key:
                continue
            tags.append((
                self._sanitize_name(self.convention.tag_key(key)),
                self._sanitize_tag_value(self.convention.tag_value(value)),
            ))
        return tags

    @abstractmethod
    def _build(
        self,
        name: str,
        identity: MetricIdentity,
        statistic: Optional[Tag],
        amount: str,
        unit: str,
    ) -> str:
        pass

    def _build_mapped(
        self,
        name: str,
        identity: MetricIdentity,
        statistic: Optional[Tag],
        amount: str,
        unit: str,
    ) -> str:
        return self._build(name, identity, statistic, amount, unit)

    @abstractmethod
    def _sanitize_name(self, text: str) -> str:
        pass

    @abstractmethod
    def _sanitize_tag_value(self, text: str) -> str:
        pass


class EtsyLineBuilder(LineBuilder):
    """``name.tagKey.tagValue[.statistic.stat]:value|unit``."""

    convention = CamelCaseConvention()
    _clean = staticmethod(_sanitizer(":|@#"))

    def _build(self, name, identity, statistic, amount, unit):
        segments = [name]
        for key, value in identity.tags:
            if statistic is not None and key == statistic.key:
                continue
            segments.append(self._sanitize_name(self.convention.tag_key(key)))
            segments.append(self._sanitize_tag_value(self.convention.tag_value(value)))
        if statistic is not None:
            segments.append(statistic.key)
            segments.append(self._sanitize_tag_value(statistic.value))
        return f"{'.'.join(segments)}:{amount}|{unit}"

    def _build_mapped(self, name, identity, statistic, amount, unit):
        # the mapper owns the whole hierarchical name
        return f"{name}:{amount}|{unit}"

    def _sanitize_name(self, text: str) -> str:
        return self._clean(text)

    def _sanitize_tag_value(self, text: str) -> str:
        return self._clean(text).replace(".", "_")


class DatadogLineBuilder(LineBuilder):
    """``name:value|unit|#statistic:stat,key:value``."""

    convention = DotConvention()
    _clean_name = staticmethod(_sanitizer(":|@#,"))
    _clean_value = staticmethod(_sanitizer("|@#,"))

    def _build(self, name, identity, statistic, amount, unit):
        line = f"{name}:{amount}|{unit}"
        tags = self._tags(identity, statistic)
        if tags:
            line += "|#" + ",".join(f"{k}:{v}" for k, v in tags)
        return line

    def _sanitize_name(self, text: str) -> str:
        return self._clean_name(text)

    def _sanitize_tag_value(self, text: str) -> str:
        return self._clean_value(text)


class TelegrafLineBuilder(LineBuilder):
    """``name,statistic=stat,key=value:value|unit``."""

    convention = SnakeCaseConvention()
    _clean = staticmethod(_sanitizer(":|=,#"))

    def _build(self, name, identity, statistic, amount, unit):
        parts = [name]
        parts.extend(f"{k}={v}" for k, v in self._tags(identity, statistic))
        return f"{','.join(parts)}:{amount}|{unit}"

    def _sanitize_name(self, text: str) -> str:
        return self._clean(text)

    def _sanitize_tag_value(self, text: str) -> str:
        return self._clean(text)


class SysdigLineBuilder(LineBuilder):
    """``name#statistic=stat,key=value:value|unit``."""

    convention = DotConvention()
    _clean = staticmethod(_sanitizer(":|=,#"))

    def _build(self, name, identity, statistic, amount, unit):
        tags = self._tags(identity, statistic)
        if tags:
            name += "#" + ",".join(f"{k}={v}" for k, v in tags)
        return f"{name}:{amount}|{unit}"

    def _sanitize_name(self, text: str) -> str:
        return self._clean(text)

    def _sanitize_tag_value(self, text: str) -> str:
        return self._clean(text)


_BUILDERS: Dict[StatsdFlavor, Type[LineBuilder]] = {
    StatsdFlavor.ETSY: EtsyLineBuilder,
    StatsdFlavor.DATADOG: DatadogLineBuilder,
    StatsdFlavor.TELEGRAF: TelegrafLineBuilder,
    StatsdFlavor.SYSDIG: SysdigLineBuilder,
}


def line_builder_for(
    flavor: Union[StatsdFlavor, str],
    name_mapper: Optional[NameMapper] = None,
) -> LineBuilder:
    """Select the line builder for a flavor."""
    try:
        key = StatsdFlavor(flavor)
    except ValueError:
        raise ValueError(f"Unknown StatsD flavor: {flavor!r}") from None
    return _BUILDERS[key](name_mapper)


def encode_line(
    identity: MetricIdentity,
    flavor: Union[StatsdFlavor, str],
    value: float,
    unit: str,
    statistic: Optional[Tag] = None,
    name_mapper: Optional[NameMapper] = None,
) -> str:
    """Render one line for ``identity`` in the given flavor."""
    return line_builder_for(flavor, name_mapper).render(identity, value, unit, statistic)
