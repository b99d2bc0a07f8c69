"""
Run orchestration: options in, verdict out.

:class:`LoadTestRunner` wires the pieces together:

1. resolve each scenario's ``exec`` function and declare the custom
   metrics its module lists in ``METRICS``,
2. validate thresholds against the declared metric types,
3. start one executor per scenario on its own thread,
4. evaluate thresholds periodically (aborting on ``abort_on_fail``) and
   enforce ``max_duration``,
5. take the final snapshot and return a :class:`RunResult`.

Configuration problems surface from :meth:`LoadTestRunner.prepare` as
:class:`~loadgen.exceptions.ConfigurationError` before any VU starts.
"""

from __future__ import annotations

import importlib
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import requests

from loadgen.exceptions import ConfigurationError, LoadgenError
from loadgen.executors import DEFAULT_TICK, Executor, ExecutorStats, create_executor
from loadgen.http import build_client_factory
from loadgen.metrics import MetricsRegistry, MetricType
from loadgen.options import RunOptions, ScenarioOptions
from loadgen.thresholds import ThresholdEvaluator, ThresholdResult
from loadgen.vu import Scenario, VUIdAllocator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_ERROR = 2


@dataclass
class RunResult:
    """Everything a reporter needs once the run is over."""

    registry: MetricsRegistry
    thresholds: list[ThresholdResult] = field(default_factory=list)
    stats: list[ExecutorStats] = field(default_factory=list)
    duration: float = 0.0
    aborted: bool = False
    abort_reason: str | None = None

    @property
    def passed(self) -> bool:
        return ThresholdEvaluator.passed(self.thresholds)

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.passed else EXIT_THRESHOLDS_FAILED


def declare_metrics(registry: MetricsRegistry, declarations: Mapping[str, Any]) -> None:
    """
    Declare custom metrics listed by a scenario module.

    Values are a :class:`MetricType` (or its string value), or a
    ``(type, is_time)`` pair for trends that hold durations.
    """
    for name, spec in declarations.items():
        if isinstance(spec, tuple):
            metric_type, is_time = spec
        else:
            metric_type, is_time = spec, False
        try:
            registry.declare(name, MetricType(metric_type), is_time=bool(is_time))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid declaration for metric '{name}': {exc}") from exc


class LoadTestRunner:
    """
    Drives one run described by :class:`RunOptions`.

    Args:
        options: Validated run options.
        registry: Collector to record into; a fresh one by default.
        session_factory: Builds each VU's ``requests.Session``.
        tick: Executor controller resolution in seconds.
    """

    def __init__(
        self,
        options: RunOptions,
        registry: MetricsRegistry | None = None,
        *,
        session_factory: Callable[[], requests.Session] = requests.Session,
        tick: float = DEFAULT_TICK,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options
        self.registry = registry or MetricsRegistry()
        self.evaluator = ThresholdEvaluator(options.thresholds)
        self._session_factory = session_factory
        self._tick = tick
        self._clock = clock
        self.executors: list[Executor] = []

    def prepare(self) -> None:
        """Resolve scenarios, declare metrics, validate thresholds, build executors."""
        if self.executors:
            return

        http_factory = build_client_factory(
            base_url=self.options.base_url,
            default_headers=self.options.default_headers,
            insecure_skip_tls_verify=self.options.insecure_skip_tls_verify,
            timeout=self.options.request_timeout,
            session_factory=self._session_factory,
        )
        vu_ids = VUIdAllocator()

        resolved: list[tuple[ScenarioOptions, Scenario]] = []
        for scenario_options in self.options.scenarios:
            scenario = scenario_options.load_scenario()
            module = importlib.import_module(scenario.__module__)
            declare_metrics(self.registry, getattr(module, "METRICS", {}))
            resolved.append((scenario_options, scenario))

        self.evaluator.validate(self.registry)

        self.executors = [
            create_executor(
                scenario_options,
                scenario,
                self.registry,
                http_factory=http_factory,
                vu_ids=vu_ids,
                tick=self._tick,
            )
            for scenario_options, scenario in resolved
        ]

    @property
    def expected_duration(self) -> float:
        """Longest the run can last: slowest scenario with its grace window, capped by ``max_duration``."""
        longest = max((executor.max_duration for executor in self.executors), default=0.0)
        if self.options.max_duration is not None:
            # The cap only ends the schedules; graceful_stop still follows it.
            capped = self.options.max_duration + max(
                (executor.graceful_stop for executor in self.executors), default=0.0
            )
            longest = min(longest, capped)
        return longest

    def run(self) -> RunResult:
        """Execute every scenario and return the final result."""
        self.prepare()
        if self.options.insecure_skip_tls_verify:
            logger.warning("TLS certificate verification is disabled for this run")

        result = RunResult(registry=self.registry)
        errors: list[BaseException] = []

        def _run_executor(executor: Executor) -> None:
            try:
                result.stats.append(executor.run())
            except Exception as exc:
                logger.exception("Scenario '%s' crashed", executor.name)
                errors.append(exc)

        threads = [
            threading.Thread(target=_run_executor, args=(executor,), name=f"executor-{executor.name}", daemon=True)
            for executor in self.executors
        ]

        logger.info(
            "Starting run: %d scenario(s) against %s, at most %.1fs",
            len(self.executors),
            self.options.base_url or "(absolute URLs)",
            self.expected_duration,
        )
        self.registry.start()
        started = self._clock()
        for thread in threads:
            thread.start()

        interval = self.options.threshold_check_interval
        poll = min(interval, 0.1)
        next_check = started + interval
        deadline = started + self.options.max_duration if self.options.max_duration is not None else None
        stopping = False

        while True:
            alive = [thread for thread in threads if thread.is_alive()]
            if not alive:
                break
            now = self._clock()

            if deadline is not None and now >= deadline and not stopping:
                logger.info("max_duration of %.1fs reached, stopping scenarios", self.options.max_duration)
                for executor in self.executors:
                    executor.stop()
                stopping = True

            if self.evaluator.thresholds and now >= next_check and not result.aborted:
                trigger = ThresholdEvaluator.abort_trigger(
                    self.evaluator.evaluate(self.registry), self.registry.elapsed()
                )
                if trigger is not None:
                    result.aborted = True
                    result.abort_reason = (
                        f"threshold '{trigger.threshold.expression}' on {trigger.threshold.key} "
                        f"failed (observed {trigger.observed})"
                    )
                    logger.warning("Aborting run: %s", result.abort_reason)
                    for executor in self.executors:
                        executor.abort()
                next_check = now + interval

            alive[0].join(timeout=poll)

        self.registry.stop()
        result.duration = self._clock() - started
        if errors:
            raise LoadgenError(f"{len(errors)} scenario(s) crashed: {errors[0]}") from errors[0]

        result.thresholds = self.evaluator.evaluate(self.registry)
        logger.info(
            "Run finished in %.1fs: thresholds %s",
            result.duration,
            "passed" if result.passed else "FAILED",
        )
        return result
