"""Metric types: counters, gauges, histograms, info metrics and their families."""

from __future__ import annotations

import enum
import itertools
import math
import operator
import threading
import time
from collections.abc import Callable, Hashable, Iterable, Sequence
from datetime import timedelta
from typing import Any

from vise.labels import encode_label_set, map_labels
from vise.validation import assert_label_names

__all__ = [
    "MetricType",
    "Counter",
    "Gauge",
    "GaugeGuard",
    "Histogram",
    "LatencyObserver",
    "Info",
    "SetInfoError",
    "Family",
    "LazyItem",
    "format_value",
]

LabelPairs = Sequence[tuple[str, str]]

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1


class MetricType(str, enum.Enum):
    """Type of a metric as reported in `# TYPE` declarations."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    INFO = "info"


def format_value(value: Any) -> str:
    """Format a sample value or a bucket bound as exported text."""
    if isinstance(value, timedelta):
        value = value.total_seconds()
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    text = repr(value)
    if "e" in text:
        mantissa, exponent = text.split("e")
        text = f"{mantissa}e{int(exponent)}"
    return text


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(labels: Iterable[tuple[str, str]]) -> str:
    encoded = ",".join(f'{name}="{_escape(value)}"' for name, value in labels)
    return f"{{{encoded}}}" if encoded else ""


def _sample(name: str, labels: Iterable[tuple[str, str]], value: Any) -> str:
    return f"{name}{_format_labels(labels)} {format_value(value)}"


def _as_seconds(value: Any) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class Counter:
    """Monotonically increasing integer counter."""

    metric_type = MetricType.COUNTER

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Counter({self.get()})"

    def inc(self) -> int:
        """Increase the counter by one, returning the previous value."""
        return self.inc_by(1)

    def inc_by(self, value: int) -> int:
        """Increase the counter by `value`, returning the previous value."""
        value = operator.index(value)
        if value < 0:
            raise ValueError(f"counter cannot be decreased (got increment {value})")
        with self._lock:
            previous = self._value
            self._value = previous + value
        return previous

    def get(self) -> int:
        """Return the current value."""
        with self._lock:
            return self._value

    def encode_samples(self, name: str, labels: LabelPairs = ()) -> list[str]:
        """Encode the counter as sample lines."""
        return [_sample(f"{name}_total", labels, self.get())]


class Gauge:
    """Value that can go up and down; holds `int`, `float` or `timedelta` values."""

    metric_type = MetricType.GAUGE

    def __init__(self, value_type: type = int) -> None:
        if value_type not in (int, float, timedelta):
            raise TypeError(f"unsupported gauge value type: {value_type!r}")
        self.value_type = value_type
        self._value = value_type()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Gauge({self.get()!r})"

    def _coerce(self, value: Any) -> Any:
        if self.value_type is timedelta:
            if not isinstance(value, timedelta):
                raise TypeError(f"expected a timedelta, got {value!r}")
            return value
        if self.value_type is float:
            return float(value)
        return operator.index(value)

    def _update(self, update: Callable[[Any], Any]) -> Any:
        with self._lock:
            previous = self._value
            self._value = update(previous)
        return previous

    def inc_by(self, value: Any) -> Any:
        """Increase the gauge by `value`, returning the previous value."""
        delta = self._coerce(value)
        return self._update(lambda current: current + delta)

    def dec_by(self, value: Any) -> Any:
        """Decrease the gauge by `value`, returning the previous value."""
        delta = self._coerce(value)
        return self._update(lambda current: current - delta)

    def set(self, value: Any) -> Any:
        """Set the gauge, returning the previous value."""
        new_value = self._coerce(value)
        return self._update(lambda _: new_value)

    def get(self) -> Any:
        """Return the current value."""
        with self._lock:
            return self._value

    def inc_guard(self, value: Any) -> GaugeGuard:
        """Increase the gauge by `value`; the returned guard decreases it back when released."""
        increment = self._coerce(value)
        self.inc_by(increment)
        return GaugeGuard(self, increment)

    def encode_samples(self, name: str, labels: LabelPairs = ()) -> list[str]:
        """Encode the gauge as sample lines."""
        value = self.get()
        if isinstance(value, int) and not _I64_MIN <= value <= _I64_MAX:
            value = float(value)
        return [_sample(name, labels, value)]


class GaugeGuard:
    """Decreases a gauge by the guarded increment when released, exited or collected."""

    def __init__(self, gauge: Gauge, increment: Any) -> None:
        self._gauge = gauge
        self._increment = increment
        self._released = False

    def __repr__(self) -> str:
        return f"GaugeGuard(increment={self._increment!r}, released={self._released})"

    def release(self) -> None:
        """Decrease the gauge back; further calls do nothing."""
        if not self._released:
            self._released = True
            self._gauge.dec_by(self._increment)

    def __enter__(self) -> GaugeGuard:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __del__(self) -> None:
        if getattr(self, "_released", True) is False:
            self.release()


class Histogram:
    """Observations counted in buckets with inclusive upper bounds."""

    metric_type = MetricType.HISTOGRAM

    def __init__(self, buckets: Iterable[float]) -> None:
        bounds = [float(bound) for bound in buckets]
        if not bounds or bounds[-1] != math.inf:
            bounds.append(math.inf)
        self._bounds = tuple(bounds)
        self._counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Histogram(buckets={self._bounds!r})"

    def observe(self, value: Any) -> None:
        """Record an observation; `timedelta`s are recorded in seconds."""
        value = _as_seconds(value)
        index = next((i for i, bound in enumerate(self._bounds) if bound >= value), None)
        with self._lock:
            self._sum += value
            self._count += 1
            if index is not None:
                self._counts[index] += 1

    def start(self) -> LatencyObserver:
        """Start measuring latency to be observed by this histogram."""
        return LatencyObserver(self)

    def encode_samples(self, name: str, labels: LabelPairs = ()) -> list[str]:
        """Encode sum, count and cumulative buckets as sample lines."""
        with self._lock:
            total, count, counts = self._sum, self._count, list(self._counts)
        lines = [
            _sample(f"{name}_sum", labels, float(total)),
            _sample(f"{name}_count", labels, count),
        ]
        for bound, cumulative in zip(self._bounds, itertools.accumulate(counts)):
            bucket_labels = [("le", format_value(bound)), *labels]
            lines.append(_sample(f"{name}_bucket", bucket_labels, cumulative))
        return lines


class LatencyObserver:
    """Measures time since creation and records it in a histogram once."""

    def __init__(self, histogram: Histogram) -> None:
        self._histogram = histogram
        self._start = time.perf_counter()
        self._observed = False

    def observe(self) -> timedelta:
        """Record and return the time elapsed since the observer was created."""
        if self._observed:
            raise RuntimeError("latency has already been observed")
        self._observed = True
        elapsed = timedelta(seconds=time.perf_counter() - self._start)
        self._histogram.observe(elapsed)
        return elapsed

    def __enter__(self) -> LatencyObserver:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if not self._observed:
            self.observe()


class SetInfoError(Exception):
    """Raised by `Info.set` when a value is already set; holds the rejected value."""

    def __init__(self, value: Any) -> None:
        super().__init__("cannot set info metric value; it is already set")
        self.value = value


_UNSET: Any = object()


class Info:
    """Information metric: a label set that is set once."""

    metric_type = MetricType.INFO

    def __init__(self) -> None:
        self._value = _UNSET
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Info({self.get()!r})"

    def get(self) -> Any:
        """Return the value, or `None` if it isn't set."""
        value = self._value
        return None if value is _UNSET else value

    def set(self, value: Any) -> None:
        """Set the value; raises `SetInfoError` if it is already set."""
        with self._lock:
            if self._value is not _UNSET:
                raise SetInfoError(value)
            self._value = value

    def encode_samples(self, name: str, labels: LabelPairs = ()) -> list[str]:
        """Encode the info metric as sample lines (none if unset)."""
        value = self._value
        if value is _UNSET:
            return []
        return [_sample(f"{name}_info", [*labels, *encode_label_set(value)], 1)]


class Family:
    """Metrics keyed by labels; members are created on first access.

    With `labels` (label names), keys are plain values: a single value for one
    name, a tuple of values for several. Without them, keys are label sets.
    """

    def __init__(self, factory: Callable[[], Any], labels: Sequence[str] | None = None) -> None:
        self._factory = factory
        if labels is not None:
            labels = tuple(labels)
            if not labels:
                raise ValueError("label names must not be empty")
            assert_label_names(labels)
        self.label_names: tuple[str, ...] | None = labels
        self._metrics: dict[Hashable, Any] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Family(label_names={self.label_names!r}, size={len(self)})"

    @property
    def metric_type(self) -> MetricType:
        """Type of the member metrics."""
        return self._factory().metric_type

    def __getitem__(self, labels: Hashable) -> Any:
        metric = self._metrics.get(labels)
        if metric is not None:
            return metric
        with self._lock:
            metric = self._metrics.get(labels)
            if metric is None:
                if self.label_names is not None:
                    map_labels(self.label_names, labels)
                metric = self._factory()
                self._metrics[labels] = metric
            return metric

    def __contains__(self, labels: Hashable) -> bool:
        return self.contains(labels)

    def __len__(self) -> int:
        return len(self._metrics)

    def contains(self, labels: Hashable) -> bool:
        """Check whether a member with these labels exists."""
        return labels in self._metrics

    def get(self, labels: Hashable) -> Any:
        """Return the member with these labels, or `None` if it wasn't created."""
        return self._metrics.get(labels)

    def get_lazy(self, labels: Hashable) -> LazyItem:
        """Return a handle that creates the member only when it is used."""
        return LazyItem(self, labels)

    def to_entries(self) -> list[tuple[Hashable, Any]]:
        """Return a snapshot of `(labels, metric)` pairs in creation order."""
        with self._lock:
            return list(self._metrics.items())

    def encode_samples(self, name: str, labels: LabelPairs = ()) -> list[str]:
        """Encode all members as sample lines, prefixed by `labels`."""
        lines: list[str] = []
        for key, metric in self.to_entries():
            member_labels = [*labels, *map_labels(self.label_names, key)]
            lines.extend(metric.encode_samples(name, member_labels))
        return lines


class LazyItem:
    """Member of a family that is created on first attribute or item access."""

    __slots__ = ("_family", "_labels")

    def __init__(self, family: Any, labels: Hashable) -> None:
        self._family = family
        self._labels = labels

    def __repr__(self) -> str:
        return f"LazyItem(labels={self._labels!r})"

    @property
    def labels(self) -> Hashable:
        """Labels of the member."""
        return self._labels

    def resolve(self) -> Any:
        """Get or create the member."""
        return self._family[self._labels]

    def __getattr__(self, attr: str) -> Any:
        if attr.startswith("_"):
            raise AttributeError(attr)
        return getattr(self.resolve(), attr)

    def __getitem__(self, key: Hashable) -> Any:
        return self.resolve()[key]