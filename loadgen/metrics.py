"""
Thread-safe metric collection and aggregation.

Every observation made during a run (request timings, check outcomes,
iteration counts, custom scenario metrics) lands in a single
:class:`MetricsRegistry`.  The registry is created by the runner and
passed explicitly to executors, virtual users and HTTP clients, so tests
can build one, drive a component, and inspect the result without any
global state.

Metric types follow the vocabulary load-testing tools settled on:

- **counter** -- monotonic total (``http_reqs``, ``iterations``)
- **gauge** -- last value wins, min/max tracked (``vus``)
- **rate** -- share of truthy samples (``checks``, ``http_req_failed``)
- **trend** -- distribution with percentiles (``http_req_duration``)

Percentiles are computed from :class:`QuantileSketch`, a log-bucket
sketch with bounded relative error, so memory grows with the spread of
observed values instead of with sample count.  Count, sum, min and max
are exact.

Samples are aggregated per distinct label-set.  A snapshot for
``http_req_duration`` merges every series; a snapshot for
``http_req_duration`` with ``{"status": "201"}`` merges only series
carrying that label.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from loadgen.exceptions import ConfigurationError

# Values closer to zero than this share the zero bucket of the sketch.
_MIN_INDEXABLE = 1e-9


class MetricType(str, Enum):
    """Kinds of metric the registry understands."""

    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


# Metrics every run produces.  Declared up front so thresholds on them
# are type-checked before the first virtual user starts.
BUILTIN_METRICS: dict[str, tuple[MetricType, bool]] = {
    "http_reqs": (MetricType.COUNTER, False),
    "http_req_duration": (MetricType.TREND, True),
    "http_req_blocked": (MetricType.TREND, True),
    "http_req_connecting": (MetricType.TREND, True),
    "http_req_tls_handshaking": (MetricType.TREND, True),
    "http_req_sending": (MetricType.TREND, True),
    "http_req_waiting": (MetricType.TREND, True),
    "http_req_receiving": (MetricType.TREND, True),
    "http_req_failed": (MetricType.RATE, False),
    "checks": (MetricType.RATE, False),
    "data_sent": (MetricType.COUNTER, False),
    "data_received": (MetricType.COUNTER, False),
    "iterations": (MetricType.COUNTER, False),
    "iteration_duration": (MetricType.TREND, True),
    "iteration_errors": (MetricType.COUNTER, False),
    "dropped_iterations": (MetricType.COUNTER, False),
    "group_duration": (MetricType.TREND, True),
    "vus": (MetricType.GAUGE, False),
    "vus_max": (MetricType.GAUGE, False),
}


@dataclass(frozen=True)
class Sample:
    """One observation: immutable once recorded."""

    name: str
    value: float
    labels: Mapping[str, str] = field(default_factory=dict)
    timestamp: float = 0.0


# =====================================================================
# Quantile Sketch
# =====================================================================


class QuantileSketch:
    """
    Streaming quantile estimator with bounded relative error.

    Values are mapped to logarithmically sized buckets: bucket ``k``
    covers ``(gamma**(k-1), gamma**k]`` with
    ``gamma = (1 + a) / (1 - a)``.  Any quantile is then reported as the
    bucket's midpoint, which is within ``a`` (relative) of a real sample
    value.  Negative values are mirrored into a second bucket map.

    The sketch is *not* locked; :class:`Metric` serialises access.
    """

    def __init__(self, relative_accuracy: float = 0.01) -> None:
        if not 0 < relative_accuracy < 1:
            raise ValueError("relative_accuracy must be between 0 and 1")
        self.relative_accuracy = relative_accuracy
        self._gamma = (1 + relative_accuracy) / (1 - relative_accuracy)
        self._log_gamma = math.log(self._gamma)
        self._positive: dict[int, int] = {}
        self._negative: dict[int, int] = {}
        self._zero_count = 0
        self.count = 0

    def _key(self, magnitude: float) -> int:
        return math.ceil(math.log(magnitude) / self._log_gamma)

    def _estimate(self, key: int) -> float:
        return 2 * self._gamma**key / (self._gamma + 1)

    def add(self, value: float) -> None:
        if value > _MIN_INDEXABLE:
            key = self._key(value)
            self._positive[key] = self._positive.get(key, 0) + 1
        elif value < -_MIN_INDEXABLE:
            key = self._key(-value)
            self._negative[key] = self._negative.get(key, 0) + 1
        else:
            self._zero_count += 1
        self.count += 1

    def merge(self, other: QuantileSketch) -> None:
        """Fold *other* into this sketch (both must share an accuracy)."""
        if other.relative_accuracy != self.relative_accuracy:
            raise ValueError("Cannot merge sketches with different accuracy")
        for key, bucket_count in other._positive.items():
            self._positive[key] = self._positive.get(key, 0) + bucket_count
        for key, bucket_count in other._negative.items():
            self._negative[key] = self._negative.get(key, 0) + bucket_count
        self._zero_count += other._zero_count
        self.count += other.count

    def copy(self) -> QuantileSketch:
        clone = QuantileSketch(self.relative_accuracy)
        clone.merge(self)
        return clone

    def quantile(self, q: float) -> float | None:
        """
        Return the estimated value at quantile *q* (``0 <= q <= 1``).

        Returns ``None`` for an empty sketch.
        """
        if self.count == 0:
            return None
        q = min(max(q, 0.0), 1.0)
        rank = q * (self.count - 1)

        seen = 0
        # Largest negative magnitude is the smallest value.
        for key in sorted(self._negative, reverse=True):
            seen += self._negative[key]
            if seen > rank:
                return -self._estimate(key)

        seen += self._zero_count
        if seen > rank:
            return 0.0

        for key in sorted(self._positive):
            seen += self._positive[key]
            if seen > rank:
                return self._estimate(key)

        # Floating-point rank at q == 1.0 lands here.
        return self._estimate(max(self._positive)) if self._positive else 0.0


# =====================================================================
# Aggregates
# =====================================================================


@dataclass(frozen=True)
class Aggregate:
    """
    Point-in-time summary of one metric (optionally one label subset).

    Produced by :meth:`MetricsRegistry.snapshot`.  The ``sketch`` is a
    private copy, so later samples never change an aggregate already
    handed out.
    """

    name: str
    metric_type: MetricType | None
    count: int = 0
    total: float = 0.0
    min: float | None = None
    max: float | None = None
    last: float | None = None
    passes: int = 0
    elapsed: float = 0.0
    is_time: bool = False
    sketch: QuantileSketch | None = field(default=None, repr=False, compare=False)

    @property
    def avg(self) -> float | None:
        return self.total / self.count if self.count else None

    @property
    def fails(self) -> int:
        return self.count - self.passes

    @property
    def rate(self) -> float | None:
        """Share of truthy samples for rates; per-second total for counters."""
        if self.metric_type is MetricType.COUNTER:
            return self.total / self.elapsed if self.elapsed > 0 else 0.0
        if not self.count:
            return None
        return self.passes / self.count

    @property
    def med(self) -> float | None:
        return self.percentile(50)

    def percentile(self, p: float) -> float | None:
        """Return the approximate *p*-th percentile (``0 <= p <= 100``)."""
        if self.sketch is None or self.count == 0:
            return None
        if p <= 0:
            return self.min
        if p >= 100:
            return self.max
        estimate = self.sketch.quantile(p / 100.0)
        if estimate is None:
            return None
        # Bucket midpoints can overshoot the exact extremes.
        return min(max(estimate, self.min), self.max)

    def resolve(self, function: str, argument: float | None = None) -> float | None:
        """
        Evaluate a threshold aggregation function against this aggregate.

        Args:
            function: One of ``count``, ``rate``, ``value``, ``avg``,
                ``min``, ``max``, ``med``, ``p``.
            argument: Percentile for ``p``.

        Returns:
            The observed value, or ``None`` when there is no data.
        """
        if function == "count":
            # A counter's "count" is the total of its increments.
            if self.metric_type is MetricType.COUNTER:
                return self.total
            return float(self.count)
        if function == "rate":
            return self.rate
        if function == "value":
            return self.last
        if function == "avg":
            return self.avg
        if function == "min":
            return self.min
        if function == "max":
            return self.max
        if function == "med":
            return self.med
        if function == "p":
            if argument is None:
                raise ValueError("p() requires a percentile argument")
            return self.percentile(argument)
        raise ValueError(f"Unknown aggregation function: {function}")


class _Series:
    """Accumulator for one label-set of one metric."""

    __slots__ = ("count", "total", "min", "max", "last", "last_at", "passes", "sketch")

    def __init__(self, with_sketch: bool) -> None:
        self.count = 0
        self.total = 0.0
        self.min: float | None = None
        self.max: float | None = None
        self.last: float | None = None
        self.last_at = float("-inf")
        self.passes = 0
        self.sketch = QuantileSketch() if with_sketch else None

    def add(self, value: float, timestamp: float) -> None:
        self.count += 1
        self.total += value
        self.last = value
        self.last_at = timestamp
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        if value:
            self.passes += 1
        if self.sketch is not None:
            self.sketch.add(value)


class Metric:
    """A named metric with one accumulator per distinct label-set."""

    def __init__(self, name: str, metric_type: MetricType, is_time: bool = False) -> None:
        self.name = name
        self.type = metric_type
        self.is_time = is_time
        self._lock = threading.Lock()
        self._series: dict[frozenset[tuple[str, str]], _Series] = {}

    def add(self, sample: Sample) -> None:
        key = frozenset(sample.labels.items())
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = _Series(with_sketch=self.type is MetricType.TREND)
                self._series[key] = series
            series.add(sample.value, sample.timestamp)

    def aggregate(self, labels: Mapping[str, str] | None, elapsed: float) -> Aggregate:
        wanted = set((labels or {}).items())
        merged = _Series(with_sketch=self.type is MetricType.TREND)
        with self._lock:
            for key, series in self._series.items():
                if not wanted <= key or series.count == 0:
                    continue
                merged.count += series.count
                merged.total += series.total
                merged.passes += series.passes
                # Gauges merged across label-sets report the most recent value.
                if series.last_at >= merged.last_at:
                    merged.last = series.last
                    merged.last_at = series.last_at
                merged.min = series.min if merged.min is None else min(merged.min, series.min)
                merged.max = series.max if merged.max is None else max(merged.max, series.max)
                if merged.sketch is not None and series.sketch is not None:
                    merged.sketch.merge(series.sketch)

        return Aggregate(
            name=self.name,
            metric_type=self.type,
            count=merged.count,
            total=merged.total,
            min=merged.min,
            max=merged.max,
            last=merged.last,
            passes=merged.passes,
            elapsed=elapsed,
            is_time=self.is_time,
            sketch=merged.sketch,
        )

    def label_values(self, key: str) -> list[str]:
        with self._lock:
            values = {dict(series_key).get(key) for series_key in self._series}
        return sorted(value for value in values if value is not None)


# =====================================================================
# Typed Handles
# =====================================================================


class SampleSink(Protocol):
    def record(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        ...


class _Handle:
    def __init__(self, sink: SampleSink, name: str) -> None:
        self._sink = sink
        self.name = name


class Counter(_Handle):
    def add(self, value: float = 1, tags: Mapping[str, str] | None = None) -> None:
        if value < 0:
            raise ValueError("Counters only accept non-negative increments")
        self._sink.record(self.name, value, tags)


class Gauge(_Handle):
    def set(self, value: float, tags: Mapping[str, str] | None = None) -> None:
        self._sink.record(self.name, value, tags)

    add = set


class Rate(_Handle):
    def add(self, value: Any, tags: Mapping[str, str] | None = None) -> None:
        self._sink.record(self.name, 1.0 if value else 0.0, tags)


class Trend(_Handle):
    def add(self, value: float, tags: Mapping[str, str] | None = None) -> None:
        self._sink.record(self.name, float(value), tags)


# =====================================================================
# Registry
# =====================================================================


class MetricsRegistry:
    """
    The run's single shared collector.

    All mutation goes through :meth:`record` (or the typed handles that
    wrap it), which is safe to call from any number of threads.

    Args:
        clock: Monotonic time source, injectable for tests.
        declare_builtins: Pre-declare the harness' own metrics.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        declare_builtins: bool = True,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._metrics: dict[str, Metric] = {}
        self._started_at: float | None = None
        self._stopped_at: float | None = None
        if declare_builtins:
            for name, (metric_type, is_time) in BUILTIN_METRICS.items():
                self.declare(name, metric_type, is_time=is_time)

    # ---- run clock ---------------------------------------------------

    def start(self) -> None:
        self._started_at = self._clock()
        self._stopped_at = None

    def stop(self) -> None:
        self._stopped_at = self._clock()

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        return max(end - self._started_at, 0.0)

    # ---- declaration -------------------------------------------------

    def declare(self, name: str, metric_type: MetricType | str, is_time: bool = False) -> Metric:
        """
        Register *name* with a type, or return the existing metric.

        Raises:
            ConfigurationError: If *name* already exists with another type.
        """
        metric_type = MetricType(metric_type)
        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if existing.type is not metric_type:
                    raise ConfigurationError(
                        f"Metric '{name}' is already a {existing.type.value}, "
                        f"cannot redeclare as {metric_type.value}"
                    )
                return existing
            metric = Metric(name, metric_type, is_time=is_time)
            self._metrics[name] = metric
            return metric

    def get(self, name: str) -> Metric | None:
        with self._lock:
            return self._metrics.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._metrics)

    # ---- recording ---------------------------------------------------

    def record(self, name: str, value: Any, labels: Mapping[str, str] | None = None) -> None:
        """
        Append one sample.  Unknown names are created lazily: booleans
        become rates, everything else a trend.
        """
        metric = self.get(name)
        if metric is None:
            inferred = MetricType.RATE if isinstance(value, bool) else MetricType.TREND
            metric = self.declare(name, inferred)
        metric.add(
            Sample(
                name=name,
                value=float(value),
                labels=dict(labels or {}),
                timestamp=self._clock(),
            )
        )

    def counter(self, name: str) -> Counter:
        self.declare(name, MetricType.COUNTER)
        return Counter(self, name)

    def gauge(self, name: str) -> Gauge:
        self.declare(name, MetricType.GAUGE)
        return Gauge(self, name)

    def rate(self, name: str) -> Rate:
        self.declare(name, MetricType.RATE)
        return Rate(self, name)

    def trend(self, name: str, is_time: bool = False) -> Trend:
        self.declare(name, MetricType.TREND, is_time=is_time)
        return Trend(self, name)

    # ---- reading -----------------------------------------------------

    def snapshot(self, name: str, labels: Mapping[str, str] | None = None) -> Aggregate:
        """
        Return a consistent aggregate of *name* as of now.

        An unknown name yields an empty aggregate (``count == 0``) rather
        than an error.
        """
        metric = self.get(name)
        if metric is None:
            return Aggregate(name=name, metric_type=None, elapsed=self.elapsed())
        return metric.aggregate(labels, self.elapsed())

    def snapshots(self, names: Iterable[str] | None = None) -> dict[str, Aggregate]:
        return {name: self.snapshot(name) for name in (names or self.names())}

    def label_values(self, name: str, key: str) -> list[str]:
        metric = self.get(name)
        return metric.label_values(key) if metric is not None else []
