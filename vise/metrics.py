"""Declarative groups of metrics, global metric instances and families of metric groups."""

from __future__ import annotations

import dataclasses
import threading
from collections.abc import Hashable, Iterable, Sequence
from datetime import timedelta
from typing import Any, ClassVar, Generic, TypeVar

from vise.labels import Unit, encode_label_set
from vise.validation import assert_label_names, assert_metric_name, assert_metric_prefix
from vise.wrappers import Counter, Family, Gauge, Histogram, Info, LazyItem, MetricType

__all__ = [
    "MetricDescriptor",
    "MetricGroupDescriptor",
    "metric",
    "Metrics",
    "Global",
    "MetricsFamily",
]

_LEAF_KINDS = (Counter, Gauge, Histogram, Info)
_GAUGE_VALUE_TYPES = (int, float, timedelta)


@dataclasses.dataclass(frozen=True)
class MetricDescriptor:
    """Static description of a single metric in a group."""

    field_name: str
    name: str
    metric_type: MetricType
    help: str = ""
    unit: Unit | None = None
    buckets: tuple[float, ...] | None = None
    labels: tuple[str, ...] | None = None

    def full_name(self) -> str:
        """Name reported to the monitoring system, including the unit suffix."""
        if self.unit is None:
            return self.name
        return f"{self.name}_{self.unit.value}"


@dataclasses.dataclass(frozen=True)
class MetricGroupDescriptor:
    """Static description of a `Metrics` subclass."""

    name: str
    module_path: str
    qualname: str
    prefix: str | None
    metrics: tuple[MetricDescriptor, ...]


@dataclasses.dataclass(frozen=True)
class _MetricSpec:
    is_family: bool
    leaf: type
    value_type: type | None
    help: str
    unit: Unit | None
    buckets: tuple[float, ...] | None
    labels: tuple[str, ...] | None

    @property
    def metric_type(self) -> MetricType:
        return self.leaf.metric_type

    def _build_leaf(self) -> Any:
        if self.leaf is Histogram:
            return Histogram(self.buckets or ())
        if self.leaf is Gauge:
            return Gauge(self.value_type or int)
        return self.leaf()

    def build(self) -> Any:
        if self.is_family:
            return Family(self._build_leaf, self.labels)
        return self._build_leaf()


def _parse_kind(kind: Any) -> tuple[bool, type, type | None]:
    is_family = False
    if isinstance(kind, tuple) and kind and kind[0] is Family:
        if len(kind) != 2:
            raise TypeError(f"family kind must be `(Family, member_kind)`, got {kind!r}")
        is_family = True
        kind = kind[1]

    value_type = None
    if isinstance(kind, tuple):
        if len(kind) != 2 or kind[0] is not Gauge:
            raise TypeError(f"unsupported metric kind: {kind!r}")
        leaf, value_type = kind
        if value_type not in _GAUGE_VALUE_TYPES:
            raise TypeError(f"unsupported gauge value type: {value_type!r}")
    elif any(kind is candidate for candidate in _LEAF_KINDS):
        leaf = kind
    else:
        raise TypeError(f"unsupported metric kind: {kind!r}")
    return is_family, leaf, value_type


def _normalize_help(help: str) -> str:
    text = " ".join(help.split())
    return text[:-1] if text.endswith(".") else text


def metric(
    kind: Any,
    *,
    help: str = "",
    unit: Unit | str | None = None,
    buckets: Iterable[float] | None = None,
    labels: Sequence[str] | None = None,
) -> Any:
    """Declare a metric as a class attribute of a `Metrics` subclass.

    `kind` is `Counter`, `Gauge`, `Histogram` or `Info`; `(Gauge, float)` selects
    the gauge value type; `(Family, member_kind)` declares a family. Histograms
    require `buckets`. `labels` gives label names for a family whose keys are
    plain values rather than label sets. A trailing full stop in `help` is dropped.
    """
    is_family, leaf, value_type = _parse_kind(kind)

    if leaf is Histogram:
        if buckets is None:
            raise ValueError("histograms and families of histograms require `buckets`")
        bucket_bounds: tuple[float, ...] | None = tuple(float(b) for b in buckets)
    elif buckets is not None:
        raise ValueError("`buckets` can only be specified for histograms")
    else:
        bucket_bounds = None

    label_names = None
    if labels is not None:
        if not is_family:
            raise ValueError("`labels` can only be specified for families")
        label_names = tuple(labels)
        if not label_names:
            raise ValueError("`labels` must not be empty")
        assert_label_names(label_names)

    return _MetricSpec(
        is_family=is_family,
        leaf=leaf,
        value_type=value_type,
        help=_normalize_help(help),
        unit=Unit(unit) if unit is not None else None,
        buckets=bucket_bounds,
        labels=label_names,
    )


class Metrics:
    """Base class for a group of related metrics.

    Subclasses declare metrics with `metric()` and may pass a `prefix` that is
    prepended (with `_`) to every field name to form the metric name.
    """

    DESCRIPTOR: ClassVar[MetricGroupDescriptor]
    _specs: ClassVar[dict[str, _MetricSpec]] = {}

    def __init_subclass__(cls, *, prefix: str | None = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if prefix is not None:
            assert_metric_prefix(prefix)

        specs: dict[str, _MetricSpec] = {}
        for base in reversed(cls.__mro__):
            specs.update(
                (attr, value)
                for attr, value in vars(base).items()
                if isinstance(value, _MetricSpec)
            )

        descriptors = []
        for field_name, spec in specs.items():
            descriptor = MetricDescriptor(
                field_name=field_name,
                name=f"{prefix}_{field_name}" if prefix else field_name,
                metric_type=spec.metric_type,
                help=spec.help,
                unit=spec.unit,
                buckets=spec.buckets,
                labels=spec.labels,
            )
            assert_metric_name(descriptor.full_name())
            descriptors.append(descriptor)

        cls._specs = specs
        cls.DESCRIPTOR = MetricGroupDescriptor(
            name=cls.__name__,
            module_path=cls.__module__,
            qualname=cls.__qualname__,
            prefix=prefix,
            metrics=tuple(descriptors),
        )

    def __init__(self) -> None:
        if type(self) is Metrics:
            raise TypeError("Metrics must be subclassed to declare metrics")
        for field_name, spec in self._specs.items():
            setattr(self, field_name, spec.build())

    def __repr__(self) -> str:
        fields = ", ".join(f"{name}={getattr(self, name)!r}" for name in self._specs)
        return f"{type(self).__name__}({fields})"

    def visit_metrics(self, visitor: Any) -> None:
        """Pass every metric to `visitor.visit_metric(name, help, unit, metric)`."""
        for descriptor in self.DESCRIPTOR.metrics:
            visitor.visit_metric(
                descriptor.name,
                descriptor.help,
                descriptor.unit,
                getattr(self, descriptor.field_name),
            )


M = TypeVar("M", bound=Metrics)


def _check_metrics_class(metrics_cls: Any) -> None:
    if not (isinstance(metrics_cls, type) and issubclass(metrics_cls, Metrics)) or (
        metrics_cls is Metrics
    ):
        raise TypeError(f"expected a subclass of Metrics, got {metrics_cls!r}")


class Global(Generic[M]):
    """Metrics instance created on first use and shared across the program.

    Attribute access is forwarded to the instance, so `METRICS.counter.inc()` works.
    """

    force_lazy: ClassVar[bool] = False

    def __init__(self, metrics_cls: type[M]) -> None:
        _check_metrics_class(metrics_cls)
        self._metrics_cls = metrics_cls
        self._instance: M | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Global({self._metrics_cls.__name__}, initialized={self.is_initialized()})"

    @property
    def DESCRIPTOR(self) -> MetricGroupDescriptor:  # noqa: N802
        """Descriptor of the metrics group."""
        return self._metrics_cls.DESCRIPTOR

    @property
    def descriptor(self) -> MetricGroupDescriptor:
        """Descriptor of the metrics group."""
        return self._metrics_cls.DESCRIPTOR

    def get(self) -> M:
        """Return the instance, creating it on first call."""
        instance = self._instance
        if instance is None:
            with self._lock:
                if self._instance is None:
                    self._instance = self._metrics_cls()
                instance = self._instance
        return instance

    def is_initialized(self) -> bool:
        """Check whether the instance has been created."""
        return self._instance is not None

    def visit_metrics(self, visitor: Any) -> None:
        """Visit the metrics if the instance exists; never creates it."""
        instance = self._instance
        if instance is not None:
            instance.visit_metrics(visitor)

    def __getattr__(self, attr: str) -> Any:
        if attr.startswith("_"):
            raise AttributeError(attr)
        return getattr(self.get(), attr)


class _GroupedMetric:
    """Same metric from several groups, each member prefixed by its group labels."""

    def __init__(self, metric_type: MetricType) -> None:
        self.metric_type = metric_type
        self._members: list[tuple[list[tuple[str, str]], Any]] = []

    def add(self, group_labels: list[tuple[str, str]], metric: Any) -> None:
        self._members.append((group_labels, metric))

    def encode_samples(self, name: str, labels: Sequence[tuple[str, str]] = ()) -> list[str]:
        lines: list[str] = []
        for group_labels, member in self._members:
            lines.extend(member.encode_samples(name, [*labels, *group_labels]))
        return lines


class _LabelGroups:
    """Visitor that merges the metrics of several groups by metric name."""

    def __init__(self) -> None:
        self._groups: dict[str, tuple[str, Unit | None, _GroupedMetric]] = {}
        self._labels: list[tuple[str, str]] = []

    def set_labels(self, labels: list[tuple[str, str]]) -> None:
        self._labels = labels

    def visit_metric(self, name: str, help: str, unit: Unit | None, metric: Any) -> None:
        entry = self._groups.get(name)
        if entry is None:
            entry = (help, unit, _GroupedMetric(metric.metric_type))
            self._groups[name] = entry
        entry[2].add(self._labels, metric)

    def visit_metrics(self, visitor: Any) -> None:
        for name, (help, unit, grouped) in self._groups.items():
            visitor.visit_metric(name, help, unit, grouped)


class MetricsFamily(Generic[M]):
    """Metrics groups keyed by a label set shared by all metrics in the group.

    Indexing gets or creates the group for the labels.
    """

    force_lazy: ClassVar[bool] = True

    def __init__(self, metrics_cls: type[M]) -> None:
        _check_metrics_class(metrics_cls)
        self._metrics_cls = metrics_cls
        self._family: Family | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"MetricsFamily({self._metrics_cls.__name__}, size={len(self)})"

    @property
    def DESCRIPTOR(self) -> MetricGroupDescriptor:  # noqa: N802
        """Descriptor of the metrics group."""
        return self._metrics_cls.DESCRIPTOR

    @property
    def descriptor(self) -> MetricGroupDescriptor:
        """Descriptor of the metrics group."""
        return self._metrics_cls.DESCRIPTOR

    def _inner(self) -> Family:
        family = self._family
        if family is None:
            with self._lock:
                if self._family is None:
                    self._family = Family(self._metrics_cls)
                family = self._family
        return family

    def __getitem__(self, labels: Hashable) -> M:
        return self._inner()[labels]

    def __contains__(self, labels: Hashable) -> bool:
        family = self._family
        return family is not None and family.contains(labels)

    def __len__(self) -> int:
        family = self._family
        return 0 if family is None else len(family)

    def get_lazy(self, labels: Hashable) -> LazyItem:
        """Return a handle that creates the group only when it is used."""
        return LazyItem(self, labels)

    def to_entries(self) -> list[tuple[Hashable, M]]:
        """Return a snapshot of `(labels, metrics)` pairs in creation order."""
        family = self._family
        return [] if family is None else family.to_entries()

    def visit_metrics(self, visitor: Any) -> None:
        """Visit each metric once, merged across groups with group labels first."""
        family = self._family
        if family is None:
            return
        grouped = _LabelGroups()
        for labels, metrics in family.to_entries():
            grouped.set_labels(encode_label_set(labels))
            metrics.visit_metrics(grouped)
        grouped.visit_metrics(visitor)