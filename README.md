# vise

`vise` is a small metrics library for applications and libraries that want to
describe their metrics declaratively and render them in the OpenMetrics or
Prometheus text format. It uses only the standard library.

## Modules

- `vise.wrappers`: metric types `Counter`, `Gauge` (holding `int`, `float` or
  `timedelta` values), `Histogram` and `Info`, plus `Family` for metrics keyed
  by labels. Also `GaugeGuard`, `LatencyObserver`, `LazyItem`, `SetInfoError`
  and `MetricType`.
- `vise.metrics`: `Metrics`, the base class for a group of related metrics,
  the `metric(...)` declaration helper, `Global` (a group instance created on
  first use) and `MetricsFamily` (groups keyed by shared labels).
- `vise.registry`: `Registry`, `MetricsCollection`, `register`, `Format`,
  `RegisteredDescriptors` and `MetricRedefinedError`.
- `vise.labels`: `label_set`, `label_value`, `label_field`, `Unit`,
  `RenameRule`, `DurationAsSecs` and the encoding helpers
  `encode_label_value`, `encode_label_set` and `map_labels`.
- `vise.validation`: name checks. Metric names, prefixes and label names must
  match `[_a-z][_a-z0-9]*`; otherwise `NameValidationError` is raised.

## Installing

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Example

```python
from vise.labels import Unit
from vise.metrics import Global, Metrics, metric
from vise.registry import Format, MetricsCollection, register
from vise.wrappers import Counter, Family, Gauge, Histogram


class AppMetrics(Metrics, prefix="my_app"):
    requests = metric(Counter, help="Number of served requests")
    cache_size = metric(Gauge, help="Current cache size", unit=Unit.BYTES)
    latency = metric(
        Histogram,
        help="Request latency",
        unit=Unit.SECONDS,
        buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
    )
    errors = metric((Family, Counter), help="Errors by method", labels=["method"])


APP_METRICS = register(Global(AppMetrics))


def handle_request():
    metrics = APP_METRICS.get()
    observer = metrics.latency.start()
    metrics.requests.inc()
    metrics.cache_size.set(4096)
    metrics.errors["call"].inc_by(2)
    observer.observe()


handle_request()
registry = MetricsCollection().collect()
print(registry.encode(Format.OPEN_METRICS))
```

The output contains lines such as:

```
# HELP my_app_requests Number of served requests.
# TYPE my_app_requests counter
my_app_requests_total 1
# HELP my_app_cache_size_bytes Current cache size.
# TYPE my_app_cache_size_bytes gauge
# UNIT my_app_cache_size_bytes bytes
my_app_cache_size_bytes 4096
my_app_errors_total{method="call"} 2
```

A metric's exported name is the prefix, the field name and the unit suffix
joined with `_`. Help texts have whitespace collapsed, a trailing full stop
dropped at declaration and one added on export. Counters get the `_total`
suffix on their samples; histograms export `_sum`, `_count` and cumulative
`_bucket` samples with an `le` label.

## Declaring metrics

`metric(kind, ...)` accepts `Counter`, `Gauge`, `Histogram` or `Info` as
`kind`; `(Gauge, float)` or `(Gauge, timedelta)` selects the gauge value type,
and `(Family, member_kind)` declares a family. Histograms require `buckets`.
`labels` names the labels of a family whose keys are plain values: a single
value for one name, a tuple for several. Without `labels`, family keys are
label sets.

## Labels

- `label_set(cls, label="method")` makes each instance a single label;
  `label_set` on a dataclass turns each field into a label. Fields set to
  `None` are left out, and `label_field(skip=..., unit=...)` skips a field by
  predicate or adds a unit suffix to its label name.
- `label_value(cls, rename_all=...)` renames enum member names by a
  `RenameRule` (`lowercase`, `UPPERCASE`, `camelCase`, `snake_case`,
  `SCREAMING_SNAKE_CASE`, `kebab-case`, `SCREAMING-KEBAB-CASE`); an enum class
  attribute `__label_names__` gives explicit values for some members.
  `label_value(cls, fmt="...")` formats the value with a `str.format` template.
- `DurationAsSecs` exports a `timedelta` label as fractional seconds.

## Families of groups

`MetricsFamily(GroupClass)` keys whole groups by a label set; indexing gets or
creates the group, and `get_lazy(labels)` creates it only when used. On export
each metric appears once, with the group labels before the metric's own.

## Collecting and encoding

`register(target)` records a `Global` or `MetricsFamily`;
`MetricsCollection().collect()` builds a `Registry` from all of them.
`filter(predicate)` keeps only groups whose descriptor satisfies the
predicate, and `MetricsCollection.lazy()` exports `Global` groups only once
they have been created. `MetricsFamily` groups are always exported lazily.
Groups can also be added by hand with `Registry().register_metrics(instance)`.

`Registry.encode(format)` returns text. `Format.OPEN_METRICS` and
`Format.OPEN_METRICS_FOR_PROMETHEUS` end with `# EOF`; `Format.PROMETHEUS`
omits it and reports info metrics with type `gauge`.

## Gauge guards and latency

`Gauge.inc_guard(value)` raises the gauge and returns a `GaugeGuard`; calling
`release()`, leaving its `with` block or letting it be collected lowers the
gauge again. `Histogram.start()` returns a `LatencyObserver` whose `observe()`
records and returns the elapsed time; it can also be used as a context manager.

## Info metrics

An `Info` metric holds a label set that is set once. Setting it a second time
raises `SetInfoError`, which holds the rejected value.

## Redefinitions

Registering two groups that define a metric with the same full name raises
`MetricRedefinedError`, naming both definitions.

## What it does not do

The package only produces the exposition text. It has no HTTP server or
exporter endpoint and no command-line program; serving `Registry.encode(...)`
to a scraper is left to the application.