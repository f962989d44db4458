"""Registries of metrics, collection of registered metrics and text encoding."""

from __future__ import annotations

import dataclasses
import enum
import threading
from collections.abc import Callable
from typing import Any, NamedTuple

from vise.labels import Unit
from vise.metrics import MetricDescriptor, MetricGroupDescriptor
from vise.wrappers import MetricType

__all__ = [
    "Format",
    "MetricRedefinedError",
    "RegisteredDescriptors",
    "Registry",
    "MetricsCollection",
    "register",
]


class Format(enum.Enum):
    """Text format used to export metrics."""

    OPEN_METRICS = "openmetrics"
    OPEN_METRICS_FOR_PROMETHEUS = "openmetrics-for-prometheus"
    PROMETHEUS = "prometheus"


class MetricRedefinedError(ValueError):
    """Raised when two registered groups define a metric with the same full name."""


class _FullMetricDescriptor(NamedTuple):
    group: MetricGroupDescriptor
    metric: MetricDescriptor

    def location(self) -> str:
        return f"{self.group.module_path}::{self.group.qualname}.{self.metric.field_name}"


class RegisteredDescriptors:
    """Descriptors of all metrics in a registry."""

    def __init__(self) -> None:
        self._groups: list[MetricGroupDescriptor] = []
        self._metrics_by_name: dict[str, _FullMetricDescriptor] = {}

    def __repr__(self) -> str:
        return f"RegisteredDescriptors(groups={[g.name for g in self._groups]!r})"

    def groups(self) -> list[MetricGroupDescriptor]:
        """Return descriptors of all registered groups in registration order."""
        return list(self._groups)

    def metric(self, full_name: str) -> _FullMetricDescriptor | None:
        """Look up a metric by the name it is exported under."""
        return self._metrics_by_name.get(full_name)

    def metric_count(self) -> int:
        """Return the total number of registered metrics."""
        return sum(len(group.metrics) for group in self._groups)

    def _push(self, group: MetricGroupDescriptor) -> None:
        added: dict[str, _FullMetricDescriptor] = {}
        for field in group.metrics:
            descriptor = _FullMetricDescriptor(group, field)
            name = field.full_name()
            previous = added.get(name) or self._metrics_by_name.get(name)
            if previous is not None:
                raise MetricRedefinedError(
                    f"Metric `{name}` is redefined. New definition is at "
                    f"{descriptor.location()}, previous definition was at "
                    f"{previous.location()}"
                )
            added[name] = descriptor
        self._metrics_by_name.update(added)
        self._groups.append(group)


@dataclasses.dataclass(frozen=True)
class _RegisteredMetric:
    name: str
    help: str
    unit: Unit | None
    metric: Any

    def encode(self, fmt: Format) -> list[str]:
        full_name = self.name if self.unit is None else f"{self.name}_{self.unit.value}"
        metric_type = self.metric.metric_type
        if fmt is Format.PROMETHEUS and metric_type is MetricType.INFO:
            type_name = MetricType.GAUGE.value
        else:
            type_name = metric_type.value
        lines = [
            f"# HELP {full_name} {self.help}.",
            f"# TYPE {full_name} {type_name}",
        ]
        if self.unit is not None:
            lines.append(f"# UNIT {full_name} {self.unit.value}")
        lines.extend(self.metric.encode_samples(full_name))
        return lines


class _MetricsSnapshot:
    """Visitor gathering the metrics of a lazily registered source at encoding time."""

    def __init__(self) -> None:
        self.entries: list[_RegisteredMetric] = []

    def visit_metric(self, name: str, help: str, unit: Unit | None, metric: Any) -> None:
        self.entries.append(_RegisteredMetric(name, help, unit, metric))


class Registry:
    """Metrics registry that can be encoded in a text exposition format."""

    def __init__(self, *, is_lazy: bool = False) -> None:
        self.descriptors = RegisteredDescriptors()
        self.is_lazy = is_lazy
        self._metrics: list[_RegisteredMetric] = []
        self._lazy_sources: list[Any] = []

    def __repr__(self) -> str:
        return f"Registry(descriptors={self.descriptors!r}, is_lazy={self.is_lazy})"

    def register_metrics(self, metrics: Any) -> None:
        """Register a group of metrics (a `Metrics` instance)."""
        self.descriptors._push(metrics.DESCRIPTOR)
        metrics.visit_metrics(self)

    def register_global_metrics(self, source: Any, force_lazy: bool) -> None:
        """Register a `Global` or `MetricsFamily`.

        Lazily registered sources are only exported once they have been created.
        """
        if force_lazy or self.is_lazy:
            self.descriptors._push(source.descriptor)
            self._lazy_sources.append(source)
        else:
            self.register_metrics(source.get())

    def visit_metric(self, name: str, help: str, unit: Unit | None, metric: Any) -> None:
        """Add a single metric to the registry."""
        self._metrics.append(_RegisteredMetric(name, help, unit, metric))

    def encode(self, format: Format = Format.OPEN_METRICS) -> str:
        """Encode all metrics in the registry in the given text format."""
        fmt = Format(format)
        lines: list[str] = []
        for entry in self._metrics:
            lines.extend(entry.encode(fmt))
        for source in self._lazy_sources:
            snapshot = _MetricsSnapshot()
            source.visit_metrics(snapshot)
            for entry in snapshot.entries:
                lines.extend(entry.encode(fmt))
        if fmt is not Format.PROMETHEUS:
            lines.append("# EOF")
        return "".join(f"{line}\n" for line in lines)


_REGISTRATIONS: list[Any] = []
_REGISTRATIONS_LOCK = threading.Lock()


def register(target: Any) -> Any:
    """Register a `Global` or `MetricsFamily` for `MetricsCollection.collect()`.

    Returns the target, so it can be used as `METRICS = register(Global(...))`.
    """
    if not all(hasattr(type(target), attr) for attr in ("descriptor", "visit_metrics")) or (
        not hasattr(target, "force_lazy")
    ):
        raise TypeError(f"{target!r} cannot be registered for metrics collection")
    with _REGISTRATIONS_LOCK:
        _REGISTRATIONS.append(target)
    return target


class MetricsCollection:
    """Configures collection of registered metrics into a `Registry`."""

    def __init__(
        self,
        *,
        is_lazy: bool = False,
        predicate: Callable[[MetricGroupDescriptor], bool] | None = None,
    ) -> None:
        self.is_lazy = is_lazy
        self._predicate = predicate

    def __repr__(self) -> str:
        return f"MetricsCollection(is_lazy={self.is_lazy})"

    @classmethod
    def lazy(cls) -> MetricsCollection:
        """Collection in which global metrics are exported only after they are first used."""
        return cls(is_lazy=True)

    def filter(self, predicate: Callable[[MetricGroupDescriptor], bool]) -> MetricsCollection:
        """Return a collection that only includes groups satisfying `predicate`."""
        return MetricsCollection(is_lazy=self.is_lazy, predicate=predicate)

    def collect(self) -> Registry:
        """Create a registry with all registered metrics that pass the filter."""
        registry = Registry(is_lazy=self.is_lazy)
        with _REGISTRATIONS_LOCK:
            registrations = list(_REGISTRATIONS)
        for source in registrations:
            if self._predicate is None or self._predicate(source.descriptor):
                registry.register_global_metrics(source, source.force_lazy)
        return registry