"""
Stage sequences and the time-varying targets they describe.

A stage says "move linearly from the previous target to ``target`` over
``duration`` seconds".  The same schedule drives both executors: for
ramping VUs the target is a concurrency level, for ramping arrival rate
it is iterations per time unit.

Durations accept plain numbers (seconds) or load-testing shorthand such
as ``"500ms"``, ``"30s"``, ``"1m30s"`` or ``"2h"``.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from loadgen.exceptions import ConfigurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Convert a duration value to seconds.

    Args:
        value: A non-negative number of seconds, or a string made of one
            or more ``<number><unit>`` parts (units ``ms``, ``s``, ``m``,
            ``h``), e.g. ``"1m30s"``.  A bare numeric string is seconds.

    Returns:
        The duration in seconds.

    Raises:
        ConfigurationError: If the value is negative or unparseable.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(number + unit for number, unit in parts) != text:
                raise ConfigurationError(f"Invalid duration: {value!r}") from None
            seconds = sum(float(number) * _UNIT_SECONDS[unit] for number, unit in parts)
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")

    if seconds < 0 or math.isnan(seconds) or math.isinf(seconds):
        raise ConfigurationError(f"Duration must be a finite non-negative value: {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    """One ramp segment: reach ``target`` after ``duration`` seconds."""

    target: float
    duration: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Stage:
        """Build a stage from ``{"target": ..., "duration": ...}``."""
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Stage must be a mapping, got {data!r}")
        try:
            raw_target = data["target"]
            raw_duration = data["duration"]
        except KeyError as exc:
            raise ConfigurationError(f"Stage is missing '{exc.args[0]}': {dict(data)!r}") from exc

        if isinstance(raw_target, bool) or not isinstance(raw_target, (int, float)):
            raise ConfigurationError(f"Stage target must be a number: {raw_target!r}")
        if raw_target < 0:
            raise ConfigurationError(f"Stage target must be >= 0: {raw_target!r}")
        return cls(target=float(raw_target), duration=parse_duration(raw_duration))


class StageSchedule:
    """
    Piecewise-linear target over time.

    Args:
        stages: Ordered stages; at least one is required.
        start_target: Target at ``t = 0`` (``start_vus`` / ``start_rate``).

    Raises:
        ConfigurationError: If the stage list is empty or malformed.
    """

    def __init__(self, stages: Iterable[Stage], start_target: float = 0.0) -> None:
        self.stages: tuple[Stage, ...] = tuple(stages)
        if not self.stages:
            raise ConfigurationError("At least one stage is required")
        if start_target < 0:
            raise ConfigurationError("Start target must be >= 0")
        for stage in self.stages:
            if stage.target < 0 or stage.duration < 0:
                raise ConfigurationError(f"Invalid stage: {stage!r}")

        self.start_target = float(start_target)
        self.total_duration = sum(stage.duration for stage in self.stages)
        self.max_target = max([self.start_target, *(stage.target for stage in self.stages)])

        # (start_time, from_target, stage) for each segment, in order.
        self._segments: list[tuple[float, float, Stage]] = []
        offset = 0.0
        previous = self.start_target
        for stage in self.stages:
            self._segments.append((offset, previous, stage))
            offset += stage.duration
            previous = stage.target

    def target_at(self, elapsed: float) -> float:
        """Return the interpolated target at *elapsed* seconds."""
        if elapsed <= 0:
            return self.start_target
        for start, from_target, stage in self._segments:
            end = start + stage.duration
            if elapsed < end:
                progress = (elapsed - start) / stage.duration
                value = from_target + (stage.target - from_target) * progress
                return min(max(value, 0.0), self.max_target)
        return self.stages[-1].target

    def stage_index_at(self, elapsed: float) -> int | None:
        """Index of the stage active at *elapsed*, or ``None`` once finished."""
        for index, (start, _, stage) in enumerate(self._segments):
            if elapsed < start + stage.duration:
                return index
        return None

    def cumulative(self, elapsed: float) -> float:
        """Integral of the target from ``0`` to *elapsed* (target × seconds)."""
        elapsed = min(max(elapsed, 0.0), self.total_duration)
        area = 0.0
        for start, from_target, stage in self._segments:
            if elapsed <= start:
                break
            span = min(elapsed - start, stage.duration)
            if stage.duration == 0:
                continue
            slope = (stage.target - from_target) / stage.duration
            area += from_target * span + slope * span * span / 2
        return area

    def time_for_cumulative(self, amount: float) -> float | None:
        """
        Invert :meth:`cumulative`: the earliest time its value reaches *amount*.

        Solves ``r0·τ + (r1 − r0)·τ² / (2d) = remaining`` inside the stage
        where the running total crosses *amount*.

        Returns:
            Seconds since start, or ``None`` if the schedule ends first.
        """
        if amount <= 0:
            return 0.0
        remaining = amount
        for start, from_target, stage in self._segments:
            if stage.duration == 0:
                continue
            stage_area = (from_target + stage.target) * stage.duration / 2
            if stage_area < remaining:
                remaining -= stage_area
                continue

            slope = (stage.target - from_target) / stage.duration
            if abs(slope) < 1e-12:
                offset = remaining / from_target
            else:
                discriminant = from_target * from_target + 2 * slope * remaining
                offset = (-from_target + math.sqrt(max(discriminant, 0.0))) / slope
            return start + min(max(offset, 0.0), stage.duration)
        return None


def stages_from_config(raw_stages: Any) -> list[Stage]:
    """Parse a list of stage mappings, raising on anything else."""
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ConfigurationError("'stages' must be a non-empty list")
    return [Stage.from_dict(item) for item in raw_stages]
