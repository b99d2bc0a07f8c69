"""
Integration tests for the ramping-vus and ramping-arrival-rate executors.

Schedules are compressed to fractions of a second and scenarios only
sleep, so these tests measure the scheduler itself: concurrency limits,
arrival counts, dropped iterations and the grace windows around
ramp-down and stop.

Key SDET Concepts Demonstrated:
- Timing assertions with generous upper bounds (no flaky exact timings)
- Deterministic schedule math checked separately from threaded runs
- Cooperative interruption observed through recorded metrics
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from loadgen import executors
from loadgen.exceptions import ConfigurationError
from loadgen.executors import (
    RampingArrivalRateExecutor,
    RampingVUsExecutor,
    create_executor,
)
from loadgen.options import ScenarioOptions
from loadgen.stages import Stage

pytestmark = pytest.mark.integration

TICK = 0.01


def _sleeper(seconds: float):
    """Scenario that marks its start and end around a think-time pause."""

    def _scenario(vu):
        vu.metrics.record("iteration_started", 1)
        vu.sleep(seconds)
        vu.metrics.record("iteration_finished", 1)

    return _scenario


# =============================================================================
# Ramping VUs
# =============================================================================


def test_ramping_vus_never_exceeds_target(registry):
    """Test that concurrency stays at or below the stage target."""
    # Arrange
    executor = RampingVUsExecutor(
        "ramp",
        _sleeper(0.05),
        registry,
        stages=[Stage(3, 0.3), Stage(3, 0.3)],
        graceful_stop=1.0,
        tick=TICK,
    )

    # Act
    stats = executor.run()

    # Assert
    assert stats.allocated_vus == 3
    assert 0 < stats.peak_concurrency <= 3
    assert stats.completed > 0
    assert registry.snapshot("vus").max <= 3
    assert registry.snapshot("vus_max").last == 3


def test_ramp_down_interrupts_after_grace(registry):
    """Test that a deactivated VU is interrupted once graceful_ramp_down passes."""
    # Arrange
    executor = RampingVUsExecutor(
        "ramp-down",
        _sleeper(5),
        registry,
        stages=[Stage(1, 0.2), Stage(0, 0.2)],
        start_vus=1,
        graceful_ramp_down=0.1,
        tick=TICK,
    )

    # Act
    started = time.monotonic()
    stats = executor.run()

    # Assert
    assert time.monotonic() - started < 3
    assert stats.started == 1
    assert stats.interrupted == 1
    assert stats.completed == 0
    assert registry.snapshot("iteration_started").count == 1
    assert registry.snapshot("iteration_finished").count == 0
    assert registry.snapshot("iterations").total == 0


def test_graceful_stop_lets_iteration_finish(registry):
    """Test that an iteration running at schedule end completes within graceful_stop."""
    # Arrange
    executor = RampingVUsExecutor(
        "graceful",
        _sleeper(0.2),
        registry,
        stages=[Stage(1, 0.3)],
        start_vus=1,
        graceful_stop=2.0,
        tick=TICK,
    )

    # Act
    stats = executor.run()

    # Assert
    assert stats.interrupted == 0
    assert stats.completed >= 2
    assert registry.snapshot("iteration_finished").count == stats.completed


def test_graceful_stop_expiry_interrupts(registry):
    """Test that iterations still running after graceful_stop are interrupted."""
    executor = RampingVUsExecutor(
        "expired",
        _sleeper(5),
        registry,
        stages=[Stage(2, 0.1)],
        start_vus=2,
        graceful_stop=0.1,
        tick=TICK,
    )

    started = time.monotonic()
    stats = executor.run()

    assert time.monotonic() - started < 3
    assert stats.interrupted == 2
    assert registry.snapshot("iteration_finished").count == 0


def test_abort_skips_grace_window(registry):
    """Test that abort() interrupts immediately even with a long graceful_stop."""
    # Arrange
    executor = RampingVUsExecutor(
        "abort",
        _sleeper(5),
        registry,
        stages=[Stage(2, 10)],
        start_vus=2,
        graceful_stop=30,
        tick=TICK,
    )
    timer = threading.Timer(0.2, executor.abort)

    # Act
    started = time.monotonic()
    timer.start()
    stats = executor.run()

    # Assert
    assert time.monotonic() - started < 3
    assert stats.interrupted == 2


def test_stop_ends_schedule_early(registry):
    """Test that stop() ends the schedule but keeps the grace window."""
    executor = RampingVUsExecutor(
        "stop",
        _sleeper(0.1),
        registry,
        stages=[Stage(1, 10)],
        start_vus=1,
        graceful_stop=2.0,
        tick=TICK,
    )
    timer = threading.Timer(0.25, executor.stop)

    started = time.monotonic()
    timer.start()
    stats = executor.run()

    assert time.monotonic() - started < 3
    assert stats.interrupted == 0
    assert stats.completed >= 1


def test_failing_scenario_keeps_running(registry):
    """Test that iteration errors are counted and the VU carries on."""

    def _broken(vu):
        vu.sleep(0.05)
        raise RuntimeError("boom")

    executor = RampingVUsExecutor(
        "broken",
        _broken,
        registry,
        stages=[Stage(1, 0.3)],
        start_vus=1,
        graceful_stop=1.0,
        tick=TICK,
    )

    stats = executor.run()

    assert stats.failed >= 2
    assert registry.snapshot("iteration_errors").total == stats.failed


def test_ramping_vus_tags_samples_with_scenario(registry):
    executor = RampingVUsExecutor(
        "tagged",
        _sleeper(0.05),
        registry,
        stages=[Stage(1, 0.15)],
        start_vus=1,
        graceful_stop=1.0,
        tags={"profile": "smoke"},
        tick=TICK,
    )

    executor.run()

    assert registry.snapshot("iteration_started", {"scenario": "tagged", "profile": "smoke"}).count >= 1


# =============================================================================
# Ramping Arrival Rate
# =============================================================================


def test_start_offsets_follow_rate_integral(registry):
    """Test that 20/s over 0.5s yields exactly 10 starts, 50ms apart."""
    executor = RampingArrivalRateExecutor(
        "offsets",
        _sleeper(0),
        registry,
        stages=[Stage(20, 0.5)],
        start_rate=20,
        pre_allocated_vus=1,
    )

    offsets = list(executor.start_offsets())

    assert len(offsets) == 10
    assert offsets[0] == 0.0
    assert offsets[1] == pytest.approx(0.05)
    assert offsets[-1] == pytest.approx(0.45)


def test_start_offsets_from_zero_rate(registry):
    """Test that a ramp from 0 to 10/s over 2s yields 10 starts, none at t=0."""
    executor = RampingArrivalRateExecutor(
        "ramp-up",
        _sleeper(0),
        registry,
        stages=[Stage(10, 2)],
        pre_allocated_vus=1,
    )

    offsets = list(executor.start_offsets())

    # Area under the ramp is 10, so arrivals at cumulative 1..9 fall inside.
    assert len(offsets) == 9
    assert offsets[0] > 0
    assert offsets == sorted(offsets)


def test_zero_rate_schedule_starts_nothing(registry):
    executor = RampingArrivalRateExecutor(
        "idle",
        _sleeper(0),
        registry,
        stages=[Stage(0, 0.2)],
        pre_allocated_vus=1,
    )

    assert list(executor.start_offsets()) == []


def test_arrival_rate_drops_when_max_vus_busy(registry):
    """Test that starts with no free VU are dropped and counted."""
    # Arrange
    executor = RampingArrivalRateExecutor(
        "saturated",
        _sleeper(0.3),
        registry,
        stages=[Stage(20, 0.5)],
        start_rate=20,
        pre_allocated_vus=2,
        max_vus=2,
        graceful_stop=1.0,
    )

    # Act
    stats = executor.run()

    # Assert
    assert stats.dropped > 0
    assert stats.started + stats.dropped == 10
    assert stats.peak_concurrency <= 2
    assert registry.snapshot("dropped_iterations", {"scenario": "saturated"}).total == stats.dropped


def test_arrival_rate_grows_pool_up_to_max_vus(registry):
    """Test that busy pre-allocated VUs trigger allocation, bounded by max_vus."""
    # Arrange
    executor = RampingArrivalRateExecutor(
        "growing",
        _sleeper(0.12),
        registry,
        stages=[Stage(20, 0.3)],
        start_rate=20,
        pre_allocated_vus=1,
        max_vus=6,
        graceful_stop=1.0,
    )

    # Act
    stats = executor.run()

    # Assert
    assert 1 < stats.allocated_vus <= 6
    assert stats.dropped == 0
    assert stats.completed == stats.started == 6


def test_arrival_rate_is_open_loop(registry):
    """Test that slow iterations do not delay later starts."""
    executor = RampingArrivalRateExecutor(
        "open-loop",
        _sleeper(0.4),
        registry,
        stages=[Stage(10, 0.5)],
        start_rate=10,
        pre_allocated_vus=5,
        max_vus=5,
        graceful_stop=1.0,
    )

    stats = executor.run()

    assert stats.started == 5
    assert stats.peak_concurrency >= 3


def test_abandoned_iteration_records_nothing_after_cutoff(registry, monkeypatch):
    """Test that a stuck iteration unwinding after wind-down leaves stats and gauges alone."""
    # Arrange
    monkeypatch.setattr(executors, "ABANDON_TIMEOUT", 0.1)

    def _stuck(vu):
        time.sleep(0.5)  # not interruptible

    executor = RampingArrivalRateExecutor(
        "abandoned",
        _stuck,
        registry,
        stages=[Stage(1, 0.1)],
        start_rate=1,
        pre_allocated_vus=1,
        graceful_stop=0,
    )

    # Act
    stats = executor.run()
    vus_samples = registry.snapshot("vus").count
    time.sleep(0.8)

    # Assert
    assert stats.started == 1
    assert stats.interrupted == 1
    assert stats.completed == 0
    assert registry.snapshot("vus").count == vus_samples
    assert registry.snapshot("iterations").total == 0


def test_abandoned_arrival_iterations_do_not_block_process_exit():
    """Test that a process exits right after the run even with iterations stuck in blocking calls."""
    # Arrange
    root = Path(__file__).resolve().parents[2]
    script = textwrap.dedent(
        """
        import json
        import time

        from loadgen.executors import RampingArrivalRateExecutor
        from loadgen.metrics import MetricsRegistry
        from loadgen.stages import Stage

        def stuck(vu):
            time.sleep(6)

        executor = RampingArrivalRateExecutor(
            "stuck",
            stuck,
            MetricsRegistry(),
            stages=[Stage(5, 0.3)],
            start_rate=5,
            pre_allocated_vus=2,
            max_vus=2,
            graceful_stop=0,
        )
        print(json.dumps(executor.run().to_dict()))
        """
    )
    env = {**os.environ, "PYTHONPATH": os.pathsep.join(filter(None, [str(root), os.environ.get("PYTHONPATH")]))}

    # Act
    started = time.monotonic()
    completed = subprocess.run(
        [sys.executable, "-c", script],
        cwd=root,
        env=env,
        capture_output=True,
        text=True,
        timeout=30,
    )
    elapsed = time.monotonic() - started

    # Assert
    assert completed.returncode == 0, completed.stderr
    stats = json.loads(completed.stdout.strip().splitlines()[-1])
    assert stats["started"] == 2
    assert stats["interrupted"] == 2
    # Schedule (0.3s) plus the abandon wait (1s); the stuck sleeps last 6s.
    assert elapsed < 4.5


@pytest.mark.parametrize(
    "kwargs",
    [
        {"pre_allocated_vus": 5, "max_vus": 2},
        {"pre_allocated_vus": -1},
        {"pre_allocated_vus": 0, "max_vus": 0},
        {"pre_allocated_vus": 1, "time_unit": 0},
    ],
)
def test_arrival_rate_invalid_settings(registry, kwargs):
    with pytest.raises(ConfigurationError):
        RampingArrivalRateExecutor("bad", _sleeper(0), registry, stages=[Stage(1, 1)], **kwargs)


# =============================================================================
# Factory
# =============================================================================


def test_create_executor_by_name(registry):
    options = ScenarioOptions(
        name="flow",
        executor="ramping-arrival-rate",
        exec_path="scenarios.api_load:user_scenario",
        stages=(Stage(5, 10),),
        pre_allocated_vus=2,
        max_vus=4,
    )

    executor = create_executor(options, _sleeper(0), registry)

    assert isinstance(executor, RampingArrivalRateExecutor)
    assert executor.max_vus == 4
    assert executor.max_duration == pytest.approx(10 + 30)


def test_create_executor_unknown(registry):
    options = ScenarioOptions(
        name="flow",
        executor="constant-vus",
        exec_path="scenarios.api_load:user_scenario",
        stages=(Stage(5, 10),),
    )

    with pytest.raises(ConfigurationError):
        create_executor(options, _sleeper(0), registry)
