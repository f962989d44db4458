import dataclasses
import enum
from datetime import timedelta

import pytest

from vise.labels import Unit, label_field, label_set, label_value
from vise.metrics import Global, Metrics, MetricsFamily, metric
from vise.registry import (
    Format,
    MetricRedefinedError,
    MetricsCollection,
    Registry,
    register,
)
from vise.wrappers import Counter, Family, Gauge, Histogram, Info

LATENCIES = (0.001, 0.005, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
ZERO_TO_ONE = (0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)


@label_set(label="method")
@dataclasses.dataclass(frozen=True)
class Method:
    name: str

    def __str__(self) -> str:
        return self.name


@label_set
@dataclasses.dataclass(frozen=True)
class PackageMetadata:
    version: str


class SampleMetrics(Metrics, prefix="test"):
    package_metadata = metric(Info, help="Test information.")
    counter = metric(Counter, help="Test counter.")
    gauge = metric(Gauge, unit=Unit.BYTES)
    family_of_gauges = metric(
        (Family, (Gauge, float)), help="Test family of gauges.", labels=["method"]
    )
    histogram = metric(
        Histogram,
        help="Histogram with inline bucket specification.",
        buckets=[0.001, 0.002, 0.005, 0.01, 0.1],
    )
    family_of_histograms = metric(
        (Family, Histogram),
        help="A family of histograms with a multiline description.\n"
        "Note that we use a type alias to properly propagate bucket configuration.",
        unit=Unit.SECONDS,
        buckets=LATENCIES,
    )
    histograms_with_buckets = metric(
        (Family, Histogram),
        help="Family of histograms with a reference bucket specification.",
        buckets=ZERO_TO_ONE,
        labels=["method"],
    )


class MethodMetrics(Metrics, prefix="rpc_method"):
    return_codes = metric((Family, Counter), labels=["code"])
    errors = metric(Counter)
    latency = metric(Histogram, buckets=LATENCIES)


class LazyMetrics(Metrics, prefix="test"):
    counter = metric(Counter, help="Test counter.")
    histogram = metric(
        Histogram,
        help="Histogram with inline bucket specification.",
        buckets=[0.001, 0.002, 0.005, 0.01, 0.1],
    )


SAMPLE_METRICS = register(Global(SampleMetrics))
GROUP_METRICS = register(MetricsFamily(MethodMetrics))
LAZY_METRICS = register(Global(LazyMetrics))


def _lines(registry, fmt=Format.OPEN_METRICS):
    return registry.encode(fmt).splitlines()


def _assert_test_metrics(registry):
    lines = _lines(registry)
    for expected in [
        "# TYPE test_counter counter",
        "# HELP test_counter Test counter.",
        "test_counter_total 3",
        "# TYPE test_histogram histogram",
        'test_histogram_bucket{le="0.01"} 1',
    ]:
        assert expected in lines, lines


def test_testing_metrics():
    test_metrics = SampleMetrics()
    registry = Registry()
    registry.register_metrics(test_metrics)

    assert test_metrics.package_metadata.get() is None
    test_metrics.package_metadata.set(PackageMetadata(version="0.1.0"))
    assert test_metrics.package_metadata.get() == PackageMetadata(version="0.1.0")

    test_metrics.counter.inc()
    assert test_metrics.counter.get() == 1
    test_metrics.gauge.set(42)
    assert test_metrics.gauge.get() == 42

    assert len(test_metrics.family_of_gauges.to_entries()) == 0
    lazy = test_metrics.family_of_gauges.get_lazy("call")
    assert len(test_metrics.family_of_gauges.to_entries()) == 0
    lazy.set(0.5)
    assert [labels for labels, _ in test_metrics.family_of_gauges.to_entries()] == ["call"]

    test_metrics.family_of_gauges["call"].set(0.4)
    test_metrics.family_of_gauges["send_transaction"].set(0.5)
    assert test_metrics.family_of_gauges.contains("call")
    assert test_metrics.family_of_gauges.get("call").get() == 0.4
    assert not test_metrics.family_of_gauges.contains("test")

    for millis in (1, 1.5, 3, 4):
        test_metrics.histogram.observe(timedelta(milliseconds=millis))
    test_metrics.family_of_histograms[Method("call")].observe(timedelta(milliseconds=20))
    test_metrics.histograms_with_buckets["call"].observe(timedelta(milliseconds=350))
    test_metrics.histograms_with_buckets["send_transaction"].observe(
        timedelta(milliseconds=620)
    )

    lines = _lines(registry)
    expected_lines = [
        "# TYPE test_package_metadata info",
        "# HELP test_package_metadata Test information.",
        'test_package_metadata_info{version="0.1.0"} 1',
        "# TYPE test_gauge_bytes gauge",
        "# UNIT test_gauge_bytes bytes",
        "test_gauge_bytes 42",
        "# HELP test_family_of_gauges Test family of gauges.",
        'test_family_of_gauges{method="call"} 0.4',
        'test_family_of_gauges{method="send_transaction"} 0.5',
        "test_histogram_sum 0.0095",
        "test_histogram_count 4",
        'test_histogram_bucket{le="0.001"} 1',
        'test_histogram_bucket{le="0.005"} 4',
        'test_histogram_bucket{le="0.01"} 4',
        "# HELP test_family_of_histograms_seconds A family of histograms with a multiline "
        "description. Note that we use a type alias to properly propagate bucket configuration.",
        'test_histograms_with_buckets_bucket{le="0.6",method="send_transaction"} 0',
        'test_histograms_with_buckets_bucket{le="0.7",method="send_transaction"} 1',
        'test_histograms_with_buckets_bucket{le="0.3",method="call"} 0',
        'test_histograms_with_buckets_bucket{le="0.4",method="call"} 1',
    ]
    for line in expected_lines:
        assert line in lines, line
    assert lines[-1] == "# EOF"


def test_descriptors_of_manual_registry():
    registry = Registry()
    registry.register_metrics(SampleMetrics())
    descriptors = registry.descriptors
    assert descriptors.metric_count() == 7
    assert [group.name for group in descriptors.groups()] == ["SampleMetrics"]
    assert descriptors.metric("test_gauge_bytes").metric.unit is Unit.BYTES
    assert descriptors.metric("test_gauge") is None
    assert descriptors.metric("test_counter").group.name == "SampleMetrics"


def test_metrics_registration():
    registry = MetricsCollection().filter(lambda group: group.name == "SampleMetrics").collect()
    descriptors = registry.descriptors
    assert descriptors.metric_count() == 7
    assert len(descriptors.groups()) == 1
    assert descriptors.metric("test_counter").metric.help == "Test counter"
    assert SAMPLE_METRICS.is_initialized()

    SAMPLE_METRICS.counter.inc_by(3)
    SAMPLE_METRICS.histogram.observe(timedelta(milliseconds=5))
    _assert_test_metrics(registry)


def test_group_registration():
    registry = MetricsCollection().filter(lambda group: group.name == "MethodMetrics").collect()

    GROUP_METRICS[Method("eth_call")].latency.observe(timedelta(milliseconds=100))
    GROUP_METRICS[Method("eth_call")].errors.inc()
    GROUP_METRICS[Method("eth_call")].return_codes[0].inc_by(5)
    GROUP_METRICS[Method("eth_call")].return_codes[3].inc_by(2)
    GROUP_METRICS[Method("eth_call")].return_codes[-2].inc()

    lazy = GROUP_METRICS.get_lazy(Method("eth_blockNumber"))
    assert [labels for labels, _ in GROUP_METRICS.to_entries()] == [Method("eth_call")]
    lazy.latency.observe(timedelta(milliseconds=200))
    lazy.return_codes[0].inc_by(7)
    assert len(GROUP_METRICS.to_entries()) == 2

    lines = _lines(registry)
    for metric_name in ["rpc_method_errors", "rpc_method_latency", "rpc_method_return_codes"]:
        start = f"# TYPE {metric_name} "
        assert sum(1 for line in lines if line.startswith(start)) == 1

    expected_lines = [
        'rpc_method_return_codes_total{method="eth_call",code="0"} 5',
        'rpc_method_return_codes_total{method="eth_call",code="-2"} 1',
        'rpc_method_return_codes_total{method="eth_call",code="3"} 2',
        'rpc_method_return_codes_total{method="eth_blockNumber",code="0"} 7',
        'rpc_method_errors_total{method="eth_call"} 1',
        'rpc_method_latency_sum{method="eth_call"} 0.1',
        'rpc_method_latency_count{method="eth_call"} 1',
        'rpc_method_latency_sum{method="eth_blockNumber"} 0.2',
        'rpc_method_latency_count{method="eth_blockNumber"} 1',
    ]
    for line in expected_lines:
        assert line in lines, lines


def test_lazy_metrics_registration():
    collection = MetricsCollection.lazy().filter(lambda group: group.name == "LazyMetrics")
    assert collection.is_lazy
    registry = collection.collect()
    descriptors = registry.descriptors
    assert descriptors.metric_count() == 2
    assert len(descriptors.groups()) == 1
    assert descriptors.metric("test_counter").metric.help == "Test counter"

    assert registry.encode(Format.OPEN_METRICS) == "# EOF\n"
    assert not LAZY_METRICS.is_initialized()

    LAZY_METRICS.counter.inc_by(3)
    LAZY_METRICS.histogram.observe(timedelta(milliseconds=5))
    _assert_test_metrics(registry)


@label_set
@dataclasses.dataclass(frozen=True)
class Labels:
    name: str = label_field(skip=lambda value: value == "")
    num: int | None = None


class MetricsWithLabels(Metrics, prefix="test"):
    gauges = metric((Family, (Gauge, float)), help="Gauge with multiple labels.")


def test_using_label_set():
    test_metrics = MetricsWithLabels()
    test_metrics.gauges[Labels(name="test")].set(1.9)
    test_metrics.gauges[Labels(name="test", num=5)].set(4.2)
    test_metrics.gauges[Labels(name="", num=3)].set(2.0)

    registry = Registry()
    registry.register_metrics(test_metrics)
    lines = _lines(registry)
    assert 'test_gauges{num="3"} 2.0' in lines
    assert 'test_gauges{name="test"} 1.9' in lines
    assert 'test_gauges{name="test",num="5"} 4.2' in lines


def test_label_named_like_builtin():
    @label_set
    @dataclasses.dataclass(frozen=True)
    class TypeLabel:
        type: str

    class CounterMetrics(Metrics, prefix="test"):
        counters = metric((Family, Counter))

    test_metrics = CounterMetrics()
    test_metrics.counters[TypeLabel("first")].inc()
    registry = Registry()
    registry.register_metrics(test_metrics)
    assert 'test_counters_total{type="first"} 1' in _lines(registry)


def test_renamed_labels():
    @label_set(label="kind")
    @label_value(rename_all="snake_case")
    class KindLabel(enum.Enum):
        First = 1
        Second = 2
        ThirdOrMore = 3
        __label_names__ = {"Second": "2nd"}

    @label_set(label="kind")
    @label_value(rename_all="SCREAMING-KEBAB-CASE")
    class ScreamingLabel(enum.Enum):
        Postgres = 1
        MySql = 2

    class RenamedMetrics(Metrics, prefix="test"):
        counters = metric((Family, Counter))
        gauges = metric((Family, Gauge))

    test_metrics = RenamedMetrics()
    test_metrics.counters[KindLabel.First].inc()
    test_metrics.counters[KindLabel.Second].inc_by(23)
    test_metrics.counters[KindLabel.ThirdOrMore].inc_by(42)
    test_metrics.gauges[ScreamingLabel.Postgres].set(5)
    test_metrics.gauges[ScreamingLabel.MySql].set(3)

    registry = Registry()
    registry.register_metrics(test_metrics)
    lines = _lines(registry)
    for line in [
        'test_counters_total{kind="first"} 1',
        'test_counters_total{kind="2nd"} 23',
        'test_counters_total{kind="third_or_more"} 42',
        'test_gauges{kind="POSTGRES"} 5',
        'test_gauges{kind="MY-SQL"} 3',
    ]:
        assert line in lines, lines


def test_labels_with_unit():
    @label_set
    @dataclasses.dataclass(frozen=True)
    class LabelsWithUnits:
        capacity: int = label_field(unit=Unit.BYTES)
        timeout: float = label_field(unit=Unit.SECONDS)

    class InfoMetrics(Metrics, prefix="test"):
        config = metric(Info)

    test_metrics = InfoMetrics()
    test_metrics.config.set(LabelsWithUnits(capacity=128, timeout=0.1))
    registry = Registry()
    registry.register_metrics(test_metrics)
    assert 'test_config_info{capacity_bytes="128",timeout_seconds="0.1"} 1' in _lines(registry)


def test_labeled_family_with_multiple_labels():
    class MultiLabelMetrics(Metrics, prefix="test"):
        counters = metric((Family, Counter), labels=["method", "code"])
        gauges = metric((Family, (Gauge, float)), labels=["db", "cf", "code"])

    test_metrics = MultiLabelMetrics()
    test_metrics.counters[("call", 200)].inc_by(10)
    test_metrics.counters[("call", 400)].inc()
    test_metrics.counters[("send_transaction", 200)].inc_by(8)
    test_metrics.counters[("send_transaction", 502)].inc_by(3)
    test_metrics.gauges[("tree", "default", 0)].set(42.0)
    test_metrics.gauges[("tree", "default", 1)].set(23.0)
    test_metrics.gauges[("tree", "stale_keys", 0)].set(20.0)

    registry = Registry()
    registry.register_metrics(test_metrics)
    lines = _lines(registry)
    for line in [
        'test_counters_total{method="call",code="400"} 1',
        'test_counters_total{method="send_transaction",code="502"} 3',
        'test_counters_total{method="send_transaction",code="200"} 8',
        'test_counters_total{method="call",code="200"} 10',
        'test_gauges{db="tree",cf="default",code="0"} 42.0',
        'test_gauges{db="tree",cf="default",code="1"} 23.0',
        'test_gauges{db="tree",cf="stale_keys",code="0"} 20.0',
    ]:
        assert line in lines, lines


def test_redefined_metric_raises():
    class FirstMetrics(Metrics):
        cache_memory_use = metric(Gauge, unit=Unit.BYTES)

    class SecondMetrics(Metrics):
        cache_memory_use = metric(Gauge, unit=Unit.BYTES)

    registry = Registry()
    registry.register_metrics(FirstMetrics())
    with pytest.raises(MetricRedefinedError, match="cache_memory_use_bytes"):
        registry.register_metrics(SecondMetrics())
    assert registry.descriptors.metric_count() == 1
    assert registry.descriptors.metric("cache_memory_use_bytes").group.name == "FirstMetrics"


def test_prometheus_format():
    test_metrics = SampleMetrics()
    test_metrics.package_metadata.set(PackageMetadata(version="0.1.0"))
    registry = Registry()
    registry.register_metrics(test_metrics)

    prom_lines = _lines(registry, Format.PROMETHEUS)
    assert "# TYPE test_package_metadata gauge" in prom_lines
    assert "# EOF" not in prom_lines

    open_lines = _lines(registry, Format.OPEN_METRICS_FOR_PROMETHEUS)
    assert "# TYPE test_package_metadata info" in open_lines
    assert open_lines[-1] == "# EOF"


def test_empty_registry_encoding():
    registry = Registry()
    assert registry.encode(Format.OPEN_METRICS) == "# EOF\n"
    assert registry.encode(Format.PROMETHEUS) == ""


def test_visit_metric_registers_single_metric():
    gauge = Gauge()
    gauge.set(7)
    registry = Registry()
    registry.visit_metric("custom", "Custom gauge", Unit.BYTES, gauge)
    assert registry.encode().splitlines() == [
        "# HELP custom_bytes Custom gauge.",
        "# TYPE custom_bytes gauge",
        "# UNIT custom_bytes bytes",
        "custom_bytes 7",
        "# EOF",
    ]
    assert registry.descriptors.metric_count() == 0


def test_register_global_metrics_forced_lazy():
    source = Global(LazyMetrics)
    registry = Registry()
    registry.register_global_metrics(source, True)
    assert registry.encode() == "# EOF\n"
    assert registry.descriptors.metric_count() == 2
    source.counter.inc()
    assert "test_counter_total 1" in _lines(registry)


def test_register_rejects_non_metrics():
    with pytest.raises(TypeError):
        register(object())