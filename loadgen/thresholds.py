"""
Threshold parsing and evaluation.

Thresholds are pass/fail criteria attached to metrics, written in the
compact form load-testing tools use::

    thresholds:
      http_req_duration: ["p(95)<250"]
      http_req_duration{status:201}: ["avg<200"]
      custom_failure_rate:
        - threshold: "rate<0.02"
          abort_on_fail: true
          delay_abort_eval: 10s

Every expression is parsed and type-checked against the declared metric
before the first virtual user starts, so a typo fails the run with exit
code 2 instead of silently passing.

Key Concepts Demonstrated:
- Small regex grammar for ``func[(arg)] op number``
- Type-aware validation (a trend has no ``rate``)
- Three-state results: pass, fail, no data
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loadgen.exceptions import ConfigurationError
from loadgen.metrics import MetricsRegistry, MetricType
from loadgen.stages import parse_duration

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(
    r"^\s*(?P<function>[a-z]+)"
    r"(?:\(\s*(?P<argument>[^)]*?)\s*\))?"
    r"\s*(?P<operator>===|==|!=|<=|>=|<|>)\s*"
    r"(?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)\s*$"
)
_METRIC_KEY = re.compile(r"^(?P<name>[A-Za-z_][A-Za-z0-9_.\-]*)(?:\{(?P<selector>[^{}]*)\})?$")

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}

FUNCTIONS_BY_TYPE: dict[MetricType, frozenset[str]] = {
    MetricType.COUNTER: frozenset({"count", "rate"}),
    MetricType.GAUGE: frozenset({"value"}),
    MetricType.RATE: frozenset({"rate"}),
    MetricType.TREND: frozenset({"avg", "min", "max", "med", "p"}),
}
ALL_FUNCTIONS = frozenset().union(*FUNCTIONS_BY_TYPE.values())


class ThresholdStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    NO_DATA = "no_data"


def parse_metric_key(key: str) -> tuple[str, dict[str, str]]:
    """
    Split ``"name{k:v,k2:v2}"`` into the metric name and its label selector.

    Raises:
        ConfigurationError: On a malformed key or selector.
    """
    match = _METRIC_KEY.match(key.strip())
    if not match:
        raise ConfigurationError(f"Invalid metric key: {key!r}")

    labels: dict[str, str] = {}
    selector = match.group("selector")
    if selector is not None:
        if not selector.strip():
            raise ConfigurationError(f"Empty label selector in {key!r}")
        for part in selector.split(","):
            label, sep, value = part.partition(":")
            if not sep or not label.strip() or not value.strip():
                raise ConfigurationError(f"Invalid label selector {part!r} in {key!r}")
            labels[label.strip()] = value.strip()
    return match.group("name"), labels


@dataclass(frozen=True)
class Threshold:
    """One parsed criterion on one metric (optionally a label subset)."""

    metric: str
    expression: str
    function: str
    operator: str
    value: float
    argument: float | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @property
    def key(self) -> str:
        if not self.labels:
            return self.metric
        selector = ",".join(f"{name}:{value}" for name, value in self.labels.items())
        return f"{self.metric}{{{selector}}}"

    def compare(self, observed: float) -> bool:
        return OPERATORS[self.operator](observed, self.value)


def parse_expression(expression: str) -> tuple[str, float | None, str, float]:
    """
    Parse ``func[(arg)] op number``.

    Returns:
        ``(function, argument, operator, value)``.

    Raises:
        ConfigurationError: On unknown functions, bad arguments or syntax.
    """
    if not isinstance(expression, str):
        raise ConfigurationError(f"Threshold expression must be a string: {expression!r}")
    match = _EXPRESSION.match(expression)
    if not match:
        raise ConfigurationError(f"Malformed threshold expression: {expression!r}")

    function = match.group("function")
    if function not in ALL_FUNCTIONS:
        raise ConfigurationError(f"Unknown threshold function '{function}' in {expression!r}")

    raw_argument = match.group("argument")
    argument: float | None = None
    if function == "p":
        if raw_argument is None or not raw_argument:
            raise ConfigurationError(f"p() needs a percentile in {expression!r}")
        try:
            argument = float(raw_argument)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid percentile {raw_argument!r} in {expression!r}") from exc
        if not 0 <= argument <= 100:
            raise ConfigurationError(f"Percentile must be within 0..100 in {expression!r}")
    elif raw_argument is not None:
        raise ConfigurationError(f"'{function}' takes no argument in {expression!r}")

    return function, argument, match.group("operator"), float(match.group("value"))


def parse_threshold(metric_key: str, spec: str | Mapping[str, Any]) -> Threshold:
    """
    Build a :class:`Threshold` from a metric key and one spec entry.

    Args:
        metric_key: ``"name"`` or ``"name{label:value}"``.
        spec: An expression string, or a mapping with ``threshold`` and
            optional ``abort_on_fail`` / ``delay_abort_eval``.
    """
    name, labels = parse_metric_key(metric_key)
    abort_on_fail = False
    delay_abort_eval = 0.0

    if isinstance(spec, Mapping):
        unknown = set(spec) - {"threshold", "abort_on_fail", "delay_abort_eval"}
        if unknown:
            raise ConfigurationError(f"Unknown threshold option(s) {sorted(unknown)} for {metric_key!r}")
        if "threshold" not in spec:
            raise ConfigurationError(f"Threshold mapping for {metric_key!r} needs 'threshold'")
        expression = spec["threshold"]
        abort_on_fail = bool(spec.get("abort_on_fail", False))
        delay_abort_eval = parse_duration(spec.get("delay_abort_eval", 0))
    else:
        expression = spec

    function, argument, op, value = parse_expression(expression)
    return Threshold(
        metric=name,
        expression=expression.strip(),
        function=function,
        operator=op,
        value=value,
        argument=argument,
        labels=labels,
        abort_on_fail=abort_on_fail,
        delay_abort_eval=delay_abort_eval,
    )


def thresholds_from_config(raw: Mapping[str, Any] | None) -> list[Threshold]:
    """Parse a ``{metric_key: spec | [specs]}`` mapping."""
    if raw is None:
        return []
    if not isinstance(raw, Mapping):
        raise ConfigurationError("'thresholds' must be a mapping of metric to expressions")
    thresholds = []
    for metric_key, specs in raw.items():
        if isinstance(specs, (str, Mapping)):
            specs = [specs]
        if not isinstance(specs, list) or not specs:
            raise ConfigurationError(f"Thresholds for {metric_key!r} must be a non-empty list")
        thresholds.extend(parse_threshold(str(metric_key), spec) for spec in specs)
    return thresholds


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    status: ThresholdStatus
    observed: float | None = None

    @property
    def passed(self) -> bool:
        return self.status is ThresholdStatus.PASS


class ThresholdEvaluator:
    """
    Evaluates a fixed set of thresholds against a registry.

    Safe to call repeatedly during the run (each call takes fresh
    snapshots) and once more after the run for the final verdict.
    """

    def __init__(self, thresholds: Iterable[Threshold]) -> None:
        self.thresholds: tuple[Threshold, ...] = tuple(thresholds)

    @classmethod
    def from_config(cls, raw: Mapping[str, Any] | None) -> ThresholdEvaluator:
        return cls(thresholds_from_config(raw))

    def validate(self, registry: MetricsRegistry) -> None:
        """
        Check every threshold's function against its metric's declared type.

        Raises:
            ConfigurationError: On a function the metric type does not support.
        """
        for threshold in self.thresholds:
            metric = registry.get(threshold.metric)
            if metric is None:
                logger.warning(
                    "Threshold on '%s' refers to a metric no scenario declares; "
                    "it will report no data unless one records it",
                    threshold.metric,
                )
                continue
            allowed = FUNCTIONS_BY_TYPE[metric.type]
            if threshold.function not in allowed:
                raise ConfigurationError(
                    f"Threshold '{threshold.expression}' on {threshold.key}: "
                    f"'{threshold.function}' is not valid for a {metric.type.value} "
                    f"(use one of {', '.join(sorted(allowed))})"
                )

    def evaluate_one(self, threshold: Threshold, registry: MetricsRegistry) -> ThresholdResult:
        aggregate = registry.snapshot(threshold.metric, threshold.labels)
        if aggregate.metric_type is None or aggregate.count == 0:
            return ThresholdResult(threshold, ThresholdStatus.NO_DATA)

        if threshold.function not in FUNCTIONS_BY_TYPE[aggregate.metric_type]:
            logger.error(
                "Threshold '%s' cannot apply to %s metric '%s'",
                threshold.expression,
                aggregate.metric_type.value,
                threshold.metric,
            )
            return ThresholdResult(threshold, ThresholdStatus.FAIL)

        observed = aggregate.resolve(threshold.function, threshold.argument)
        if observed is None:
            return ThresholdResult(threshold, ThresholdStatus.NO_DATA)
        status = ThresholdStatus.PASS if threshold.compare(observed) else ThresholdStatus.FAIL
        return ThresholdResult(threshold, status, observed)

    def evaluate(self, registry: MetricsRegistry) -> list[ThresholdResult]:
        return [self.evaluate_one(threshold, registry) for threshold in self.thresholds]

    @staticmethod
    def passed(results: Iterable[ThresholdResult]) -> bool:
        """Overall verdict: every threshold must pass; no data is a failure."""
        return all(result.passed for result in results)

    @staticmethod
    def abort_trigger(results: Iterable[ThresholdResult], elapsed: float) -> ThresholdResult | None:
        """First failing ``abort_on_fail`` threshold whose delay has passed."""
        for result in results:
            threshold = result.threshold
            if (
                threshold.abort_on_fail
                and result.status is ThresholdStatus.FAIL
                and elapsed >= threshold.delay_abort_eval
            ):
                return result
        return None
