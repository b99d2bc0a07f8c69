"""
fx-loadgen: a threaded load-test harness for HTTP APIs.

Scenarios are plain Python functions that receive a
:class:`~loadgen.vu.VirtualUser`; executors decide how many of them run
and when; every request, check and iteration lands in one
:class:`~loadgen.metrics.MetricsRegistry`; thresholds turn the final
numbers into a CI exit code.

Key Concepts Demonstrated:
- Closed-loop (ramping VUs) and open-loop (arrival rate) load models
- Streaming percentile estimation with bounded relative error
- Declarative pass/fail gates evaluated during and after the run
"""

from loadgen.exceptions import ConfigurationError, IterationInterrupted, LoadgenError, ParseError
from loadgen.http import HttpClient, Response, Timings
from loadgen.metrics import Aggregate, MetricsRegistry, MetricType, Sample
from loadgen.options import RunOptions, ScenarioOptions, load_run_options, options_from_dict
from loadgen.runner import LoadTestRunner, RunResult
from loadgen.stages import Stage, StageSchedule, parse_duration
from loadgen.thresholds import Threshold, ThresholdEvaluator, ThresholdResult, ThresholdStatus
from loadgen.vu import VirtualUser

__version__ = "0.1.0"

__all__ = [
    "Aggregate",
    "ConfigurationError",
    "HttpClient",
    "IterationInterrupted",
    "LoadTestRunner",
    "LoadgenError",
    "MetricType",
    "MetricsRegistry",
    "ParseError",
    "Response",
    "RunOptions",
    "RunResult",
    "Sample",
    "ScenarioOptions",
    "Stage",
    "StageSchedule",
    "Threshold",
    "ThresholdEvaluator",
    "ThresholdResult",
    "ThresholdStatus",
    "Timings",
    "VirtualUser",
    "load_run_options",
    "parse_duration",
]
