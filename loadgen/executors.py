"""
Executors: turn a stage schedule into running virtual users.

Two scheduling models are supported:

**ramping-vus** (closed loop)
    A fixed pool of ``max_vus`` worker threads is created up front.  A
    controller wakes every ``tick`` seconds, computes
    ``floor(target_at(elapsed))`` and activates or deactivates workers
    by index.  Active workers run the scenario back to back, so the
    request rate depends on how fast the target answers.

**ramping-arrival-rate** (open loop)
    Iteration *starts* follow the stage schedule regardless of how long
    iterations take.  Starts fire each time the integral of the
    interpolated rate grows by another ``time_unit``.  Each start grabs
    an idle VU; when none is idle the pool grows up to ``max_vus``, and
    past that the start is dropped and counted in ``dropped_iterations``.

Both share the shutdown rules: when the schedule ends (or the run asks
to stop) running iterations get ``graceful_stop`` seconds to finish and
are then interrupted and abandoned.

Key Concepts Demonstrated:
- Thread-per-VU workers gated by ``threading.Event``
- Daemon worker per VU, so abandoned iterations never block exit
- Cooperative cancellation after a grace window
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from loadgen.exceptions import ConfigurationError
from loadgen.metrics import MetricsRegistry
from loadgen.stages import Stage, StageSchedule
from loadgen.vu import IterationOutcome, Scenario, VirtualUser, VUIdAllocator

if TYPE_CHECKING:
    from loadgen.http import HttpClient
    from loadgen.options import ScenarioOptions

logger = logging.getLogger(__name__)

RAMPING_VUS = "ramping-vus"
RAMPING_ARRIVAL_RATE = "ramping-arrival-rate"

DEFAULT_GRACEFUL_STOP = 30.0
DEFAULT_GRACEFUL_RAMP_DOWN = 30.0
DEFAULT_TICK = 0.05

# How long to wait for interrupted iterations to unwind before abandoning them.
ABANDON_TIMEOUT = 1.0


@dataclass
class ExecutorStats:
    """What one executor did during the run."""

    scenario: str
    executor: str
    started: int = 0
    completed: int = 0
    failed: int = 0
    interrupted: int = 0
    dropped: int = 0
    peak_concurrency: int = 0
    allocated_vus: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =====================================================================
# Base Executor
# =====================================================================


class Executor:
    """
    Shared plumbing: VU creation, concurrency tracking, graceful stop.

    Subclasses implement :meth:`_execute`, which runs the schedule and
    returns the VUs it created so the base class can wind them down.
    """

    kind = "base"

    def __init__(
        self,
        name: str,
        scenario: Scenario,
        registry: MetricsRegistry,
        *,
        graceful_stop: float = DEFAULT_GRACEFUL_STOP,
        start_time: float = 0.0,
        tags: Mapping[str, str] | None = None,
        http_factory: Callable[[VirtualUser], HttpClient] | None = None,
        vu_ids: VUIdAllocator | None = None,
        tick: float = DEFAULT_TICK,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if graceful_stop < 0:
            raise ConfigurationError(f"{name}: graceful_stop must be >= 0")
        if start_time < 0:
            raise ConfigurationError(f"{name}: start_time must be >= 0")
        if tick <= 0:
            raise ConfigurationError(f"{name}: tick must be > 0")

        self.name = name
        self.scenario = scenario
        self.registry = registry
        self.graceful_stop = graceful_stop
        self.start_time = start_time
        self.tags = dict(tags or {})
        self.http_factory = http_factory
        self.vu_ids = vu_ids or VUIdAllocator()
        self.tick = tick
        self._clock = clock

        self.stats = ExecutorStats(scenario=name, executor=self.kind)
        self._lock = threading.Lock()
        self._in_flight = 0
        # Ids of VUs reserved for, or inside, an iteration.
        self._running: set[int] = set()
        self._finalized = False
        self._stop = threading.Event()
        self._aborted = threading.Event()
        self._done = threading.Event()
        self._threads: list[threading.Thread] = []

    # ---- lifecycle ---------------------------------------------------

    @property
    def schedule_duration(self) -> float:
        raise NotImplementedError

    @property
    def max_duration(self) -> float:
        """Longest this executor can run, grace window included."""
        return self.start_time + self.schedule_duration + self.graceful_stop

    def stop(self) -> None:
        """End the schedule early; running iterations still get ``graceful_stop``."""
        self._stop.set()

    def abort(self) -> None:
        """End the schedule now and interrupt running iterations immediately."""
        self._aborted.set()
        self._stop.set()

    def run(self) -> ExecutorStats:
        """Run the whole schedule on the calling thread and return stats."""
        if self.start_time and self._stop.wait(self.start_time):
            logger.info("Scenario '%s' stopped before its start time", self.name)
            return self.stats

        logger.info("Scenario '%s' (%s) starting", self.name, self.kind)
        vus = self._execute()
        self._wind_down(vus)
        logger.info(
            "Scenario '%s' finished: %d completed, %d failed, %d interrupted, %d dropped",
            self.name,
            self.stats.completed,
            self.stats.failed,
            self.stats.interrupted,
            self.stats.dropped,
        )
        return self.stats

    def _execute(self) -> list[VirtualUser]:
        raise NotImplementedError

    # ---- helpers for subclasses --------------------------------------

    def _new_vu(self) -> VirtualUser:
        vu = VirtualUser(
            self.vu_ids.allocate(),
            self.name,
            self.registry,
            http_factory=self.http_factory,
            tags=self.tags,
            clock=self._clock,
        )
        with self._lock:
            self.stats.allocated_vus += 1
            allocated = self.stats.allocated_vus
        self.registry.record("vus_max", allocated, {"scenario": self.name})
        return vu

    def _run_one(self, vu: VirtualUser) -> IterationOutcome:
        with self._lock:
            self._in_flight += 1
            self._running.add(vu.id)
            self.stats.started += 1
            self.stats.peak_concurrency = max(self.stats.peak_concurrency, self._in_flight)
            in_flight = self._in_flight
        self.registry.record("vus", in_flight, {"scenario": self.name})

        outcome = IterationOutcome.INTERRUPTED
        try:
            outcome = vu.run_iteration(self.scenario)
        finally:
            with self._lock:
                self._in_flight -= 1
                in_flight = self._in_flight
                # An abandoned iteration unwinding after the cutoff records nothing.
                finalized = self._finalized
                if not finalized:
                    if outcome is IterationOutcome.COMPLETED:
                        self.stats.completed += 1
                    elif outcome is IterationOutcome.FAILED:
                        self.stats.failed += 1
                    else:
                        self.stats.interrupted += 1
                self._running.discard(vu.id)
            if not finalized:
                self.registry.record("vus", in_flight, {"scenario": self.name})
        return outcome

    def _spawn(self, target: Callable[..., None], *args: Any, name: str) -> None:
        """Start a daemon worker; stuck workers must never keep the process alive."""
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _reserve(self, vu: VirtualUser) -> None:
        """Mark *vu* as running before its iteration is handed to another thread."""
        with self._lock:
            self._running.add(vu.id)

    def _busy(self, vus: Iterable[VirtualUser]) -> list[VirtualUser]:
        with self._lock:
            return [vu for vu in vus if vu.id in self._running]

    def _wait_idle(
        self, vus: Iterable[VirtualUser], timeout: float, until_abort: bool = True
    ) -> list[VirtualUser]:
        """Wait until no VU is busy or *timeout* passes; return the busy ones."""
        vus = list(vus)
        deadline = self._clock() + timeout
        while True:
            busy = self._busy(vus)
            if not busy or self._clock() >= deadline:
                return busy
            if until_abort and self._aborted.is_set():
                return busy
            time.sleep(min(self.tick, max(deadline - self._clock(), 0.0)))

    def _wind_down(self, vus: list[VirtualUser]) -> None:
        grace = 0.0 if self._aborted.is_set() else self.graceful_stop
        busy = self._wait_idle(vus, grace)
        if busy:
            logger.info(
                "Scenario '%s': interrupting %d iteration(s) after graceful stop of %.1fs",
                self.name,
                len(busy),
                grace,
            )
            for vu in busy:
                vu.interrupt()
            busy = self._wait_idle(busy, ABANDON_TIMEOUT, until_abort=False)

        with self._lock:
            # Iterations still stuck (e.g. in a long HTTP call) are abandoned.
            self.stats.interrupted += len(busy)
            self._finalized = True
        if busy:
            logger.warning("Scenario '%s': abandoned %d stuck iteration(s)", self.name, len(busy))

        self._done.set()
        for thread in self._threads:
            thread.join(timeout=self.tick)


# =====================================================================
# Ramping VUs
# =====================================================================


class _Slot:
    """One pre-created VU plus the switch that lets it run."""

    def __init__(self, vu: VirtualUser) -> None:
        self.vu = vu
        self.active = threading.Event()
        self.deactivated_at: float | None = None


class RampingVUsExecutor(Executor):
    """
    Closed-loop executor: a varying number of VUs loop over the scenario.

    Args:
        stages: Concurrency targets over time.
        start_vus: Active VUs at ``t = 0``.
        graceful_ramp_down: Seconds a deactivated VU may keep running its
            current iteration before it is interrupted.
    """

    kind = RAMPING_VUS

    def __init__(
        self,
        name: str,
        scenario: Scenario,
        registry: MetricsRegistry,
        *,
        stages: Iterable[Stage],
        start_vus: int = 0,
        graceful_ramp_down: float = DEFAULT_GRACEFUL_RAMP_DOWN,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, scenario, registry, **kwargs)
        if isinstance(start_vus, bool) or not isinstance(start_vus, int) or start_vus < 0:
            raise ConfigurationError(f"{name}: start_vus must be a non-negative integer")
        if graceful_ramp_down < 0:
            raise ConfigurationError(f"{name}: graceful_ramp_down must be >= 0")
        self.schedule = StageSchedule(stages, start_target=start_vus)
        self.graceful_ramp_down = graceful_ramp_down
        self.max_vus = int(math.ceil(self.schedule.max_target))

    @property
    def schedule_duration(self) -> float:
        return self.schedule.total_duration

    def _target(self, elapsed: float) -> int:
        # Tolerance keeps 99.9999 from flooring to 99 at a stage boundary.
        return min(int(math.floor(self.schedule.target_at(elapsed) + 1e-9)), self.max_vus)

    def _worker(self, slot: _Slot) -> None:
        while not self._done.is_set():
            if not slot.active.wait(self.tick):
                continue
            if self._done.is_set():
                break
            self._run_one(slot.vu)

    def _execute(self) -> list[VirtualUser]:
        slots = [_Slot(self._new_vu()) for _ in range(self.max_vus)]
        for slot in slots:
            self._spawn(self._worker, slot, name=f"{self.name}-vu-{slot.vu.id}")

        started = self._clock()
        active = 0
        stage_index: int | None = -1
        while not self._stop.is_set():
            now = self._clock()
            elapsed = now - started
            if elapsed >= self.schedule.total_duration:
                break

            current_stage = self.schedule.stage_index_at(elapsed)
            if current_stage != stage_index and current_stage is not None:
                stage = self.schedule.stages[current_stage]
                logger.info(
                    "Scenario '%s': stage %d/%d, target %g VUs over %.1fs",
                    self.name,
                    current_stage + 1,
                    len(self.schedule.stages),
                    stage.target,
                    stage.duration,
                )
                stage_index = current_stage

            target = self._target(elapsed)
            if target > active:
                for slot in slots[active:target]:
                    slot.deactivated_at = None
                    slot.active.set()
            elif target < active:
                for slot in slots[target:active]:
                    slot.active.clear()
                    slot.deactivated_at = now
            active = target

            for slot in slots[active:]:
                if (
                    slot.deactivated_at is not None
                    and slot.vu.busy
                    and now - slot.deactivated_at >= self.graceful_ramp_down
                ):
                    slot.vu.interrupt()

            self._stop.wait(self.tick)

        for slot in slots:
            slot.active.clear()
        return [slot.vu for slot in slots]


# =====================================================================
# Ramping Arrival Rate
# =====================================================================


class RampingArrivalRateExecutor(Executor):
    """
    Open-loop executor: iterations start on a schedule, not on completion.

    Args:
        stages: Rate targets (iterations per ``time_unit``) over time.
        start_rate: Rate at ``t = 0``.
        time_unit: Seconds the rate is expressed per.
        pre_allocated_vus: VUs created before the first start.
        max_vus: Hard cap on VUs; defaults to ``pre_allocated_vus``.
    """

    kind = RAMPING_ARRIVAL_RATE

    def __init__(
        self,
        name: str,
        scenario: Scenario,
        registry: MetricsRegistry,
        *,
        stages: Iterable[Stage],
        pre_allocated_vus: int,
        start_rate: float = 0.0,
        time_unit: float = 1.0,
        max_vus: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, scenario, registry, **kwargs)
        if time_unit <= 0:
            raise ConfigurationError(f"{name}: time_unit must be > 0")
        if isinstance(pre_allocated_vus, bool) or not isinstance(pre_allocated_vus, int) or pre_allocated_vus < 0:
            raise ConfigurationError(f"{name}: pre_allocated_vus must be a non-negative integer")
        max_vus = pre_allocated_vus if max_vus is None else max_vus
        if isinstance(max_vus, bool) or not isinstance(max_vus, int) or max_vus < 1:
            raise ConfigurationError(f"{name}: max_vus must be a positive integer")
        if max_vus < pre_allocated_vus:
            raise ConfigurationError(f"{name}: max_vus ({max_vus}) < pre_allocated_vus ({pre_allocated_vus})")

        self.schedule = StageSchedule(stages, start_target=start_rate)
        self.time_unit = time_unit
        self.pre_allocated_vus = pre_allocated_vus
        self.max_vus = max_vus

    @property
    def schedule_duration(self) -> float:
        return self.schedule.total_duration

    def start_offsets(self) -> Iterable[float]:
        """
        Yield the scheduled start times (seconds from start) in order.

        With a non-zero ``start_rate`` the first iteration starts at
        ``t = 0``; from a zero rate the first start waits for one full
        ``time_unit`` worth of accumulated rate.
        """
        k = 0 if self.schedule.start_target > 0 else 1
        while True:
            due = self.schedule.time_for_cumulative(k * self.time_unit)
            if due is None or due >= self.schedule.total_duration:
                return
            yield due
            k += 1

    def _arrival_worker(self, slot: _Slot, idle: deque[_Slot], idle_lock: threading.Lock) -> None:
        # ``slot.active`` is set once per scheduled start.
        while not self._done.is_set():
            if not slot.active.wait(self.tick):
                continue
            slot.active.clear()
            if self._done.is_set():
                break
            try:
                self._run_one(slot.vu)
            finally:
                with idle_lock:
                    idle.append(slot)

    def _execute(self) -> list[VirtualUser]:
        idle: deque[_Slot] = deque()
        idle_lock = threading.Lock()
        slots: list[_Slot] = []
        warned_growth = False
        warned_drop = False

        def allocate() -> _Slot:
            slot = _Slot(self._new_vu())
            slots.append(slot)
            self._spawn(self._arrival_worker, slot, idle, idle_lock, name=f"{self.name}-vu-{slot.vu.id}")
            return slot

        for _ in range(self.pre_allocated_vus):
            idle.append(allocate())

        started = self._clock()
        for due in self.start_offsets():
            delay = started + due - self._clock()
            if delay > 0 and self._stop.wait(delay):
                break
            if self._stop.is_set():
                break

            with idle_lock:
                slot = idle.popleft() if idle else None
            if slot is None:
                if len(slots) < self.max_vus:
                    if not warned_growth:
                        logger.warning(
                            "Scenario '%s': all %d pre-allocated VUs busy, allocating more (max %d)",
                            self.name,
                            len(slots),
                            self.max_vus,
                        )
                        warned_growth = True
                    slot = allocate()
                else:
                    if not warned_drop:
                        logger.warning(
                            "Scenario '%s': max_vus (%d) reached, dropping iterations",
                            self.name,
                            self.max_vus,
                        )
                        warned_drop = True
                    with self._lock:
                        self.stats.dropped += 1
                    self.registry.record("dropped_iterations", 1, {"scenario": self.name})
                    continue

            self._reserve(slot.vu)
            slot.active.set()

        # Hold until the schedule ends; graceful_stop counts from there.
        remaining = started + self.schedule.total_duration - self._clock()
        if remaining > 0:
            self._stop.wait(remaining)
        return [slot.vu for slot in slots]


# =====================================================================
# Factory
# =====================================================================


def create_executor(
    options: ScenarioOptions,
    scenario: Scenario,
    registry: MetricsRegistry,
    *,
    http_factory: Callable[[VirtualUser], HttpClient] | None = None,
    vu_ids: VUIdAllocator | None = None,
    tick: float = DEFAULT_TICK,
) -> Executor:
    """Build the executor named by ``options.executor``."""
    common: dict[str, Any] = {
        "graceful_stop": options.graceful_stop,
        "start_time": options.start_time,
        "tags": options.tags,
        "http_factory": http_factory,
        "vu_ids": vu_ids,
        "tick": tick,
    }
    if options.executor == RAMPING_VUS:
        return RampingVUsExecutor(
            options.name,
            scenario,
            registry,
            stages=options.stages,
            start_vus=options.start_vus,
            graceful_ramp_down=options.graceful_ramp_down,
            **common,
        )
    if options.executor == RAMPING_ARRIVAL_RATE:
        return RampingArrivalRateExecutor(
            options.name,
            scenario,
            registry,
            stages=options.stages,
            start_rate=options.start_rate,
            time_unit=options.time_unit,
            pre_allocated_vus=options.pre_allocated_vus,
            max_vus=options.max_vus,
            **common,
        )
    raise ConfigurationError(f"{options.name}: unknown executor '{options.executor}'")
