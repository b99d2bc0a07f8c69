"""
Unit tests for the metric collector.

Covers the four metric types, label-subset aggregation, lazy metric
creation and the accuracy of the streaming percentile sketch.

Key SDET Concepts Demonstrated:
- Exact versus approximate assertions (``pytest.approx`` with a tolerance)
- Injected clock for time-dependent rates
- Concurrency smoke test with plain threads
"""

from __future__ import annotations

import threading

import pytest

from loadgen.exceptions import ConfigurationError
from loadgen.metrics import MetricsRegistry, MetricType, QuantileSketch

pytestmark = pytest.mark.unit


class _FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_counter_total_is_exact(registry):
    """Test that a counter sums its increments without approximation."""
    # Arrange
    counter = registry.counter("custom_request_count")

    # Act
    counter.add(1)
    counter.add(2.5)
    counter.add(3)

    # Assert
    aggregate = registry.snapshot("custom_request_count")
    assert aggregate.total == 6.5
    assert aggregate.resolve("count") == 6.5


def test_counter_rejects_negative_increment(registry):
    """Test that counters refuse to go backwards."""
    with pytest.raises(ValueError):
        registry.counter("requests").add(-1)


def test_counter_rate_uses_elapsed_run_time():
    """Test that a counter's rate is its total divided by seconds since start."""
    # Arrange
    clock = _FakeClock()
    registry = MetricsRegistry(clock=clock)
    registry.start()

    # Act
    registry.counter("http_reqs").add(20)
    clock.now = 10.0
    registry.stop()

    # Assert
    assert registry.snapshot("http_reqs").rate == pytest.approx(2.0)


def test_rate_tracks_share_of_true_samples(registry):
    """Test that a rate metric reports passes / total."""
    # Arrange
    rate = registry.rate("custom_failure_rate")

    # Act
    for value in (True, False, True, True):
        rate.add(value)

    # Assert
    aggregate = registry.snapshot("custom_failure_rate")
    assert aggregate.rate == pytest.approx(0.75)
    assert aggregate.passes == 3
    assert aggregate.fails == 1


def test_gauge_keeps_last_value_and_extremes(registry):
    """Test that a gauge reports its latest value plus min and max."""
    # Arrange
    gauge = registry.gauge("vus")

    # Act
    for value in (3, 7, 5):
        gauge.set(value)

    # Assert
    aggregate = registry.snapshot("vus")
    assert aggregate.resolve("value") == 5
    assert aggregate.min == 3
    assert aggregate.max == 7


def test_gauge_across_label_sets_reports_most_recent_value():
    """Test that merging label-sets picks the newest sample, not the first series seen."""
    # Arrange
    clock = _FakeClock()
    registry = MetricsRegistry(clock=clock)

    # Act
    registry.record("vus", 5, {"scenario": "a"})
    clock.now = 1.0
    registry.record("vus", 3, {"scenario": "b"})
    clock.now = 2.0
    registry.record("vus", 7, {"scenario": "a"})

    # Assert
    assert registry.snapshot("vus").last == 7
    assert registry.snapshot("vus", {"scenario": "b"}).last == 3


def test_trend_exact_statistics(registry):
    """Test that min, max, avg and count are exact for trends."""
    # Arrange
    trend = registry.trend("login_duration", is_time=True)

    # Act
    for value in (10.0, 20.0, 30.0, 40.0):
        trend.add(value)

    # Assert
    aggregate = registry.snapshot("login_duration")
    assert aggregate.count == 4
    assert aggregate.min == 10.0
    assert aggregate.max == 40.0
    assert aggregate.avg == 25.0
    assert aggregate.is_time is True


@pytest.mark.parametrize("percentile,expected", [(50, 500.5), (90, 900.1), (95, 950.05), (99, 990.01)])
def test_trend_percentiles_within_two_percent(registry, percentile, expected):
    """Test that sketch percentiles stay within 2% of the exact value."""
    # Arrange
    for value in range(1, 1001):
        registry.record("http_req_duration", float(value))

    # Act
    observed = registry.snapshot("http_req_duration").percentile(percentile)

    # Assert
    assert observed == pytest.approx(expected, rel=0.02)


def test_percentile_extremes_are_exact(registry):
    """Test that p(0) and p(100) return the exact min and max."""
    # Arrange
    for value in (3.3, 1.1, 9.9):
        registry.record("iteration_duration", value)

    # Act
    aggregate = registry.snapshot("iteration_duration")

    # Assert
    assert aggregate.percentile(0) == 1.1
    assert aggregate.percentile(100) == 9.9


def test_snapshot_filters_by_label_subset(registry):
    """Test that a label selector aggregates only matching series."""
    # Arrange
    registry.record("http_req_duration", 100.0, {"status": "200", "method": "GET"})
    registry.record("http_req_duration", 300.0, {"status": "500", "method": "GET"})
    registry.record("http_req_duration", 200.0, {"status": "200", "method": "POST"})

    # Act
    ok = registry.snapshot("http_req_duration", {"status": "200"})
    everything = registry.snapshot("http_req_duration")

    # Assert
    assert ok.count == 2
    assert ok.avg == 150.0
    assert everything.count == 3


def test_unknown_metric_snapshot_is_empty(registry):
    """Test that asking for a never-seen metric returns an empty aggregate."""
    aggregate = registry.snapshot("does_not_exist")

    assert aggregate.count == 0
    assert aggregate.metric_type is None
    assert aggregate.avg is None


def test_record_creates_unknown_metrics_lazily(registry):
    """Test that booleans become rates and numbers become trends on first use."""
    # Act
    registry.record("token_present", True)
    registry.record("custom_latency", 12.0)

    # Assert
    assert registry.get("token_present").type is MetricType.RATE
    assert registry.get("custom_latency").type is MetricType.TREND


def test_redeclare_with_other_type_raises(registry):
    """Test that a metric name cannot change type."""
    with pytest.raises(ConfigurationError):
        registry.declare("http_reqs", MetricType.TREND)


def test_builtin_metrics_are_declared(registry):
    """Test that the harness metrics exist before any sample is recorded."""
    names = registry.names()

    assert {"http_reqs", "http_req_duration", "checks", "iterations", "dropped_iterations"} <= set(names)
    assert registry.get("checks").type is MetricType.RATE


def test_label_values_lists_distinct_values(registry):
    """Test that label_values returns each distinct value once, sorted."""
    # Arrange
    registry.record("checks", True, {"check": "login status is 200"})
    registry.record("checks", False, {"check": "token present"})
    registry.record("checks", True, {"check": "login status is 200"})

    # Act
    values = registry.label_values("checks", "check")

    # Assert
    assert values == ["login status is 200", "token present"]


def test_concurrent_records_are_not_lost(registry):
    """Test that parallel writers never drop samples."""
    # Arrange
    counter = registry.counter("custom_request_count")

    def _worker() -> None:
        for _ in range(1000):
            counter.add(1)

    threads = [threading.Thread(target=_worker) for _ in range(8)]

    # Act
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # Assert
    assert registry.snapshot("custom_request_count").total == 8000


def test_sketch_handles_negative_and_zero_values():
    """Test that the sketch orders negative, zero and positive samples correctly."""
    # Arrange
    sketch = QuantileSketch()
    for value in (-5.0, -1.0, 0.0, 3.0):
        sketch.add(value)

    # Act & Assert
    assert sketch.quantile(0.0) == pytest.approx(-5.0, rel=0.02)
    assert sketch.quantile(1.0) == pytest.approx(3.0, rel=0.02)
    assert sketch.count == 4


def test_sketch_merge_combines_counts():
    """Test that merging two sketches keeps every observation."""
    # Arrange
    left, right = QuantileSketch(), QuantileSketch()
    for value in range(1, 51):
        left.add(float(value))
    for value in range(51, 101):
        right.add(float(value))

    # Act
    left.merge(right)

    # Assert
    assert left.count == 100
    assert left.quantile(0.5) == pytest.approx(50.5, rel=0.02)


def test_empty_sketch_has_no_quantile():
    """Test that an empty sketch reports no data instead of zero."""
    assert QuantileSketch().quantile(0.5) is None
