"""
End-of-test summary: a table for CI logs and an optional JSON export.

The text layout follows the threshold gate's style -- fixed-width
columns, a dashed rule between sections and a final ``Overall:`` line
that CI logs can grep for.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, TextIO

from loadgen.metrics import Aggregate, MetricType
from loadgen.runner import RunResult
from loadgen.thresholds import ThresholdStatus

logger = logging.getLogger(__name__)

RULE = "-" * 78


def _parse_stat(stat: str) -> tuple[str, float | None]:
    if stat.startswith("p(") and stat.endswith(")"):
        return "p", float(stat[2:-1])
    return stat, None


def _trend_value(aggregate: Aggregate, stat: str) -> float | None:
    function, argument = _parse_stat(stat)
    if function == "count":
        return float(aggregate.count)
    return aggregate.resolve(function, argument)


def _fmt_number(value: float | None, is_time: bool = False) -> str:
    if value is None:
        return "-"
    if is_time:
        return f"{value:.2f}ms"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.4g}"


def _describe(aggregate: Aggregate, trend_stats: tuple[str, ...]) -> str:
    if aggregate.metric_type is MetricType.TREND:
        return " ".join(
            f"{stat}={_fmt_number(_trend_value(aggregate, stat), aggregate.is_time)}" for stat in trend_stats
        )
    if aggregate.metric_type is MetricType.RATE:
        rate = aggregate.rate or 0.0
        return f"{rate * 100:.2f}%  {aggregate.passes} out of {aggregate.count}"
    if aggregate.metric_type is MetricType.GAUGE:
        return (
            f"{_fmt_number(aggregate.last)}  min={_fmt_number(aggregate.min)} "
            f"max={_fmt_number(aggregate.max)}"
        )
    return f"{_fmt_number(aggregate.total)}  {aggregate.rate or 0.0:.2f}/s"


def render_summary(result: RunResult, trend_stats: tuple[str, ...]) -> str:
    """Build the human-readable summary as one string."""
    registry = result.registry
    lines = ["Load Test Summary", RULE]

    check_names = registry.label_values("checks", "check")
    if check_names:
        lines.append("Checks")
        for name in check_names:
            aggregate = registry.snapshot("checks", {"check": name})
            status = "PASS" if aggregate.fails == 0 else "FAIL"
            lines.append(
                f"  {status:<6}{name:<48}{(aggregate.rate or 0.0) * 100:>8.2f}%"
                f"  ({aggregate.passes}/{aggregate.count})"
            )
        lines.append(RULE)

    lines.append("Metrics")
    for name in registry.names():
        aggregate = registry.snapshot(name)
        if aggregate.count == 0:
            continue
        lines.append(f"  {name + ' ':.<34} {_describe(aggregate, trend_stats)}")
    lines.append(RULE)

    if result.stats:
        lines.append("Scenarios")
        for stats in result.stats:
            lines.append(
                f"  {stats.scenario:<24}{stats.executor:<22}"
                f"completed={stats.completed} failed={stats.failed} "
                f"interrupted={stats.interrupted} dropped={stats.dropped} "
                f"peak={stats.peak_concurrency} vus={stats.allocated_vus}"
            )
        lines.append(RULE)

    if result.thresholds:
        lines.append("Thresholds")
        lines.append(f"  {'Metric':<34}{'Expression':<18}{'Observed':>12}{'Status':>10}")
        for threshold_result in result.thresholds:
            threshold = threshold_result.threshold
            observed = threshold_result.observed
            lines.append(
                f"  {threshold.key:<34}{threshold.expression:<18}"
                f"{_fmt_number(observed):>12}{threshold_result.status.value.upper():>10}"
            )
            if threshold_result.status is ThresholdStatus.NO_DATA:
                lines.append(f"    no samples recorded for {threshold.key}")
        lines.append(RULE)

    if result.aborted:
        lines.append(f"Aborted: {result.abort_reason}")
    lines.append(f"Duration: {result.duration:.1f}s")
    lines.append(f"Overall: {'PASS' if result.passed else 'FAIL'}")
    return "\n".join(lines)


def print_summary(result: RunResult, trend_stats: tuple[str, ...], stream: TextIO | None = None) -> None:
    print(render_summary(result, trend_stats), file=stream or sys.stdout)


def _aggregate_to_dict(aggregate: Aggregate, trend_stats: tuple[str, ...]) -> dict[str, Any]:
    data: dict[str, Any] = {"type": aggregate.metric_type.value if aggregate.metric_type else None}
    if aggregate.metric_type is MetricType.TREND:
        data.update({stat: _trend_value(aggregate, stat) for stat in trend_stats})
        data["count"] = aggregate.count
    elif aggregate.metric_type is MetricType.RATE:
        data.update({"rate": aggregate.rate, "passes": aggregate.passes, "fails": aggregate.fails})
    elif aggregate.metric_type is MetricType.GAUGE:
        data.update({"value": aggregate.last, "min": aggregate.min, "max": aggregate.max})
    else:
        data.update({"count": aggregate.total, "rate": aggregate.rate})
    return data


def summary_to_dict(result: RunResult, trend_stats: tuple[str, ...]) -> dict[str, Any]:
    """Machine-readable form of the summary (what ``--summary-export`` writes)."""
    registry = result.registry
    metrics = {}
    for name in registry.names():
        aggregate = registry.snapshot(name)
        if aggregate.count:
            metrics[name] = _aggregate_to_dict(aggregate, trend_stats)

    checks = {}
    for name in registry.label_values("checks", "check"):
        aggregate = registry.snapshot("checks", {"check": name})
        checks[name] = {"passes": aggregate.passes, "fails": aggregate.fails}

    return {
        "passed": result.passed,
        "aborted": result.aborted,
        "abort_reason": result.abort_reason,
        "duration": result.duration,
        "metrics": metrics,
        "checks": checks,
        "scenarios": [stats.to_dict() for stats in result.stats],
        "thresholds": [
            {
                "metric": threshold_result.threshold.key,
                "threshold": threshold_result.threshold.expression,
                "status": threshold_result.status.value,
                "observed": threshold_result.observed,
            }
            for threshold_result in result.thresholds
        ],
    }


def export_summary(result: RunResult, trend_stats: tuple[str, ...], path: str | Path) -> Path:
    """Write :func:`summary_to_dict` as JSON and return the path."""
    path = Path(path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(summary_to_dict(result, trend_stats), handle, indent=2)
    logger.info("Summary exported to %s", path)
    return path
