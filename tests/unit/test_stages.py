"""
Unit tests for duration parsing and stage schedules.
"""

from __future__ import annotations

import pytest

from loadgen.exceptions import ConfigurationError
from loadgen.stages import Stage, StageSchedule, parse_duration, stages_from_config

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "value,expected",
    [
        ("30s", 30.0),
        ("1m30s", 90.0),
        ("500ms", 0.5),
        ("2h", 7200.0),
        ("1.5", 1.5),
        (2, 2.0),
        (0.25, 0.25),
        (" 10S ", 10.0),
    ],
)
def test_parse_duration_valid(value, expected):
    """Test the duration shorthand accepted in stage and option values."""
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["abc", "10x", "-1s", "", -3, True, None, "1m 30s"])
def test_parse_duration_invalid(value):
    """Test that unparseable or negative durations are rejected."""
    with pytest.raises(ConfigurationError):
        parse_duration(value)


def test_stage_from_dict():
    """Test building a stage from its config mapping."""
    stage = Stage.from_dict({"target": 50, "duration": "2m"})

    assert stage == Stage(target=50.0, duration=120.0)


@pytest.mark.parametrize(
    "data",
    [
        {"duration": "10s"},
        {"target": 5},
        {"target": -1, "duration": "10s"},
        {"target": "many", "duration": "10s"},
        ["target", 5],
    ],
)
def test_stage_from_dict_invalid(data):
    """Test that incomplete or negative stages are configuration errors."""
    with pytest.raises(ConfigurationError):
        Stage.from_dict(data)


def test_stages_from_config_requires_non_empty_list():
    """Test that 'stages' must be a non-empty list."""
    with pytest.raises(ConfigurationError):
        stages_from_config([])
    with pytest.raises(ConfigurationError):
        stages_from_config({"target": 1, "duration": "1s"})


# =============================================================================
# Schedule Interpolation
# =============================================================================


@pytest.fixture
def ramp_hold_down() -> StageSchedule:
    """0 -> 10 over 10s, hold 10 for 10s, 10 -> 0 over 10s."""
    return StageSchedule(
        [Stage(10, 10), Stage(10, 10), Stage(0, 10)],
        start_target=0,
    )


@pytest.mark.parametrize(
    "elapsed,expected",
    [(-1, 0), (0, 0), (5, 5), (10, 10), (15, 10), (25, 5), (30, 0), (99, 0)],
)
def test_target_at_interpolates_linearly(ramp_hold_down, elapsed, expected):
    """Test that the target moves linearly between stage endpoints."""
    assert ramp_hold_down.target_at(elapsed) == pytest.approx(expected)


def test_schedule_totals(ramp_hold_down):
    """Test total duration and max target of a schedule."""
    assert ramp_hold_down.total_duration == 30
    assert ramp_hold_down.max_target == 10


def test_stage_index_at(ramp_hold_down):
    """Test which stage is active at a given time."""
    assert ramp_hold_down.stage_index_at(0) == 0
    assert ramp_hold_down.stage_index_at(12) == 1
    assert ramp_hold_down.stage_index_at(29.9) == 2
    assert ramp_hold_down.stage_index_at(30) is None


@pytest.mark.parametrize("elapsed,expected", [(10, 50), (20, 150), (30, 200), (40, 200)])
def test_cumulative_is_area_under_target(ramp_hold_down, elapsed, expected):
    """Test the integral of the target curve."""
    assert ramp_hold_down.cumulative(elapsed) == pytest.approx(expected)


@pytest.mark.parametrize("amount,expected", [(0, 0), (50, 10), (150, 20), (200, 30)])
def test_time_for_cumulative_inverts_cumulative(ramp_hold_down, amount, expected):
    """Test that the inverse lands on the stage boundaries for exact areas."""
    assert ramp_hold_down.time_for_cumulative(amount) == pytest.approx(expected)


def test_time_for_cumulative_inside_ramp(ramp_hold_down):
    """Test the quadratic solution inside a ramp: area 12.5 is reached at t=5."""
    assert ramp_hold_down.time_for_cumulative(12.5) == pytest.approx(5.0)


def test_time_for_cumulative_past_end_is_none(ramp_hold_down):
    """Test that amounts beyond the schedule's total are never reached."""
    assert ramp_hold_down.time_for_cumulative(201) is None


def test_constant_rate_schedule():
    """Test a flat schedule: 2 per second reaches 5 after 2.5s."""
    schedule = StageSchedule([Stage(2, 10)], start_target=2)

    assert schedule.time_for_cumulative(5) == pytest.approx(2.5)
    assert schedule.target_at(7) == pytest.approx(2)


def test_zero_duration_stage_jumps_target():
    """Test that a zero-length stage switches the target instantly."""
    schedule = StageSchedule([Stage(5, 0), Stage(5, 2)], start_target=0)

    assert schedule.target_at(0.5) == pytest.approx(5)
    assert schedule.time_for_cumulative(5) == pytest.approx(1.0)


def test_empty_schedule_is_rejected():
    """Test that a schedule needs at least one stage."""
    with pytest.raises(ConfigurationError):
        StageSchedule([])
