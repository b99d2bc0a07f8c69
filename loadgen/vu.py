"""
Virtual users and the per-iteration context handed to scenarios.

A scenario is a plain function that receives a :class:`VirtualUser`::

    def user_scenario(vu: VirtualUser) -> None:
        with vu.group("Authentication"):
            response = vu.http.post("/auth/login", json={...})
            vu.check(response, {"login status is 200": lambda r: r.status == 200})
            vu.sleep(1)

The VU owns everything one simulated client needs: a stable id, its own
HTTP session, a metrics recorder that tags samples with the scenario
and group, and cancellable think-time.  Executors call
:meth:`VirtualUser.run_iteration` and may :meth:`~VirtualUser.interrupt`
an iteration once its grace window is over; from that moment the
recorder drops every sample and the next ``sleep`` or HTTP call raises
:class:`~loadgen.exceptions.IterationInterrupted`.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any

from loadgen.exceptions import IterationInterrupted
from loadgen.metrics import Counter, Gauge, MetricsRegistry, MetricType, Rate, Trend

if TYPE_CHECKING:
    from loadgen.http import HttpClient

logger = logging.getLogger(__name__)

Scenario = Callable[["VirtualUser"], Any]


class IterationOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class VUIdAllocator:
    """Hands out run-unique VU ids, shared by every executor in a run."""

    def __init__(self, start: int = 1) -> None:
        self._next = start
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            vu_id = self._next
            self._next += 1
            return vu_id


class Iteration:
    """One scenario invocation: sequence number, start time, interruption flag."""

    def __init__(self, number: int, started_at: float) -> None:
        self.number = number
        self.started_at = started_at
        self._interrupted = threading.Event()

    @property
    def interrupted(self) -> bool:
        return self._interrupted.is_set()

    def interrupt(self) -> None:
        self._interrupted.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return ``True`` if interrupted meanwhile."""
        return self._interrupted.wait(timeout)


class IterationRecorder:
    """
    Sample sink that tags and gates everything a VU records.

    Samples are merged with the VU's current tags (``scenario``,
    ``group`` and any scenario-level tags) and silently discarded once
    the running iteration has been interrupted.
    """

    def __init__(self, registry: MetricsRegistry, vu: VirtualUser) -> None:
        self._registry = registry
        self._vu = vu

    def record(self, name: str, value: Any, labels: Mapping[str, str] | None = None) -> None:
        iteration = self._vu.current_iteration
        if iteration is not None and iteration.interrupted:
            return
        tags = self._vu.tags
        if labels:
            tags.update({key: str(val) for key, val in labels.items()})
        self._registry.record(name, value, tags)

    def counter(self, name: str) -> Counter:
        self._registry.declare(name, MetricType.COUNTER)
        return Counter(self, name)

    def gauge(self, name: str) -> Gauge:
        self._registry.declare(name, MetricType.GAUGE)
        return Gauge(self, name)

    def rate(self, name: str) -> Rate:
        self._registry.declare(name, MetricType.RATE)
        return Rate(self, name)

    def trend(self, name: str, is_time: bool = False) -> Trend:
        self._registry.declare(name, MetricType.TREND, is_time=is_time)
        return Trend(self, name)


class VirtualUser:
    """
    One simulated client.

    Args:
        vu_id: Run-unique identifier, stable for the VU's lifetime.
        scenario: Name of the scenario this VU belongs to.
        registry: The run's metrics collector.
        http_factory: Builds the VU's :class:`~loadgen.http.HttpClient`;
            called once with the VU so the client can record through
            :attr:`metrics` and honour interruption.
        tags: Extra tags attached to every sample this VU records.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        vu_id: int,
        scenario: str,
        registry: MetricsRegistry,
        http_factory: Callable[[VirtualUser], HttpClient] | None = None,
        tags: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.id = vu_id
        self.scenario = scenario
        self._base_tags = {key: str(val) for key, val in (tags or {}).items()}
        self._clock = clock
        self._group_path: list[str] = []
        self._next_iteration = 0
        self._current: Iteration | None = None
        self.metrics = IterationRecorder(registry, self)
        self.http: HttpClient | None = http_factory(self) if http_factory else None

    # ---- state -------------------------------------------------------

    @property
    def current_iteration(self) -> Iteration | None:
        return self._current

    @property
    def iteration(self) -> int:
        """Zero-based number of the running (or next) iteration of this VU."""
        if self._current is not None:
            return self._current.number
        return self._next_iteration

    @property
    def busy(self) -> bool:
        return self._current is not None

    @property
    def group_path(self) -> str:
        return "::" + "::".join(self._group_path) if self._group_path else ""

    @property
    def tags(self) -> dict[str, str]:
        tags = dict(self._base_tags)
        tags["scenario"] = self.scenario
        tags["group"] = self.group_path
        return tags

    def interrupt(self) -> bool:
        """Abandon the running iteration.  Returns ``False`` if idle."""
        iteration = self._current
        if iteration is None:
            return False
        iteration.interrupt()
        return True

    def ensure_active(self) -> None:
        """Raise :class:`IterationInterrupted` if the iteration was abandoned."""
        iteration = self._current
        if iteration is not None and iteration.interrupted:
            raise IterationInterrupted(f"VU {self.id} iteration {iteration.number} interrupted")

    # ---- execution ---------------------------------------------------

    def run_iteration(self, scenario: Scenario) -> IterationOutcome:
        """
        Run *scenario* once and convert whatever happens into metrics.

        Exceptions raised by the scenario never propagate: they are
        logged and counted in ``iteration_errors``.  Interrupted
        iterations record nothing further and are not counted in
        ``iterations``.
        """
        iteration = Iteration(self._next_iteration, self._clock())
        self._current = iteration
        self._group_path = []
        outcome = IterationOutcome.COMPLETED
        try:
            scenario(self)
        except IterationInterrupted:
            outcome = IterationOutcome.INTERRUPTED
        except Exception as exc:  # scenario errors are data, not crashes
            outcome = IterationOutcome.FAILED
            logger.warning(
                "Iteration %d of VU %d (%s) failed: %s",
                iteration.number,
                self.id,
                self.scenario,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self.metrics.record("iteration_errors", 1)

        try:
            if iteration.interrupted:
                return IterationOutcome.INTERRUPTED

            self._group_path = []
            duration_ms = (self._clock() - iteration.started_at) * 1000.0
            self.metrics.record("iterations", 1)
            self.metrics.record("iteration_duration", duration_ms)
            return outcome
        finally:
            self._current = None
            self._group_path = []
            self._next_iteration += 1

    # ---- scenario API ------------------------------------------------

    def sleep(self, seconds: float, maximum: float | None = None) -> None:
        """
        Pause for think-time; ``sleep(1, 3)`` picks a uniform value in [1, 3].

        Wakes immediately (raising :class:`IterationInterrupted`) when
        the iteration is abandoned.
        """
        duration = random.uniform(seconds, maximum) if maximum is not None else seconds
        if duration <= 0:
            return
        iteration = self._current
        if iteration is None:
            time.sleep(duration)
            return
        if iteration.wait(duration):
            raise IterationInterrupted(f"VU {self.id} interrupted during sleep")

    def check(
        self,
        value: Any,
        checks: Mapping[str, Callable[[Any], Any]],
        tags: Mapping[str, str] | None = None,
    ) -> bool:
        """
        Evaluate named predicates against *value* and record each in ``checks``.

        A predicate that raises counts as a failed check.

        Returns:
            ``True`` only if every predicate passed.
        """
        all_passed = True
        for name, predicate in checks.items():
            try:
                passed = bool(predicate(value))
            except Exception as exc:  # a broken predicate is a failed check
                logger.debug("Check %r raised %s", name, exc)
                passed = False
            labels = {"check": name}
            if tags:
                labels.update(tags)
            self.metrics.record("checks", passed, labels)
            all_passed = all_passed and passed
        return all_passed

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        """Tag everything recorded inside the block with a nested group path."""
        if "::" in name:
            raise ValueError("Group names must not contain '::'")
        self._group_path.append(name)
        started = self._clock()
        try:
            yield
        finally:
            group_tag = self.group_path
            self._group_path.pop()
            self.metrics.record(
                "group_duration",
                (self._clock() - started) * 1000.0,
                {"group": group_tag},
            )
