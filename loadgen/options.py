"""
Run options: what to run, against what, and how to judge it.

A run is described by a YAML file (or an equivalent dict)::

    base_url: https://localhost:8443/api/v1
    insecure_skip_tls_verify: true
    scenarios:
      subscription_flow:
        executor: ramping-vus
        exec: scenarios.subscription_flow:user_scenario
        start_vus: 0
        stages:
          - {duration: 1m, target: 50}
          - {duration: 2m, target: 0}
        graceful_ramp_down: 30s
    thresholds:
      http_req_duration: ["p(95)<250"]

Environment defaults from :mod:`loadgen.config` are applied first and
the file overrides them.  Everything is validated up front and frozen;
any problem raises :class:`~loadgen.exceptions.ConfigurationError`.
"""

from __future__ import annotations

import dataclasses
import importlib
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from loadgen.config import environment_settings
from loadgen.exceptions import ConfigurationError
from loadgen.executors import (
    DEFAULT_GRACEFUL_RAMP_DOWN,
    DEFAULT_GRACEFUL_STOP,
    RAMPING_ARRIVAL_RATE,
    RAMPING_VUS,
)
from loadgen.stages import Stage, parse_duration, stages_from_config
from loadgen.thresholds import Threshold, thresholds_from_config
from loadgen.vu import Scenario

logger = logging.getLogger(__name__)

_COMMON_SCENARIO_KEYS = {"executor", "exec", "stages", "graceful_stop", "start_time", "tags"}
_EXECUTOR_KEYS = {
    RAMPING_VUS: _COMMON_SCENARIO_KEYS | {"start_vus", "graceful_ramp_down"},
    RAMPING_ARRIVAL_RATE: _COMMON_SCENARIO_KEYS
    | {"start_rate", "time_unit", "pre_allocated_vus", "max_vus"},
}
_RUN_KEYS = {
    "base_url",
    "insecure_skip_tls_verify",
    "default_headers",
    "request_timeout",
    "max_duration",
    "summary_trend_stats",
    "threshold_check_interval",
    "scenarios",
    "thresholds",
}
_TREND_STAT = re.compile(r"^(avg|min|med|max|count|p\((\d+(?:\.\d+)?)\))$")


@dataclass(frozen=True)
class ScenarioOptions:
    """One named scenario and the executor settings that drive it."""

    name: str
    executor: str
    exec_path: str
    stages: tuple[Stage, ...]
    start_vus: int = 0
    graceful_ramp_down: float = DEFAULT_GRACEFUL_RAMP_DOWN
    start_rate: float = 0.0
    time_unit: float = 1.0
    pre_allocated_vus: int = 0
    max_vus: int | None = None
    graceful_stop: float = DEFAULT_GRACEFUL_STOP
    start_time: float = 0.0
    tags: Mapping[str, str] = field(default_factory=dict)

    def load_scenario(self) -> Scenario:
        return resolve_exec(self.exec_path)


@dataclass(frozen=True)
class RunOptions:
    """Fully validated, immutable description of one run."""

    scenarios: tuple[ScenarioOptions, ...]
    thresholds: tuple[Threshold, ...] = ()
    base_url: str = ""
    insecure_skip_tls_verify: bool = False
    default_headers: Mapping[str, str] = field(default_factory=dict)
    request_timeout: float = 60.0
    max_duration: float | None = None
    summary_trend_stats: tuple[str, ...] = ("avg", "min", "med", "max", "p(90)", "p(95)")
    threshold_check_interval: float = 2.0

    def with_overrides(self, **changes: Any) -> RunOptions:
        """Return a copy with some fields replaced (CLI flags use this)."""
        return dataclasses.replace(self, **changes)


def resolve_exec(path: str) -> Scenario:
    """
    Import ``"package.module:function"`` and return the function.

    Raises:
        ConfigurationError: If the path is malformed, the module cannot
            be imported, or the attribute is missing or not callable.
    """
    module_name, sep, attribute = str(path).partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(f"exec must look like 'module:function', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import scenario module '{module_name}': {exc}") from exc

    target: Any = module
    for part in attribute.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise ConfigurationError(f"'{module_name}' has no attribute '{attribute}'")
    if not callable(target):
        raise ConfigurationError(f"exec target {path!r} is not callable")
    return target


def _int_option(name: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"{name}: '{key}' must be a non-negative integer, got {value!r}")
    return value


def _number_option(name: str, key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigurationError(f"{name}: '{key}' must be a non-negative number, got {value!r}")
    return float(value)


def scenario_from_dict(name: str, raw: Mapping[str, Any]) -> ScenarioOptions:
    """Validate one entry of the ``scenarios`` mapping."""
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Scenario '{name}' must be a mapping")

    executor = raw.get("executor")
    if executor not in _EXECUTOR_KEYS:
        raise ConfigurationError(
            f"Scenario '{name}': executor must be one of {sorted(_EXECUTOR_KEYS)}, got {executor!r}"
        )
    unknown = set(raw) - _EXECUTOR_KEYS[executor]
    if unknown:
        raise ConfigurationError(f"Scenario '{name}': unknown option(s) {sorted(unknown)} for {executor}")
    if "exec" not in raw:
        raise ConfigurationError(f"Scenario '{name}': 'exec' is required")

    tags = raw.get("tags") or {}
    if not isinstance(tags, Mapping):
        raise ConfigurationError(f"Scenario '{name}': 'tags' must be a mapping")

    common: dict[str, Any] = {
        "name": name,
        "executor": executor,
        "exec_path": str(raw["exec"]),
        "stages": tuple(stages_from_config(raw.get("stages"))),
        "graceful_stop": parse_duration(raw.get("graceful_stop", DEFAULT_GRACEFUL_STOP)),
        "start_time": parse_duration(raw.get("start_time", 0)),
        "tags": {str(key): str(value) for key, value in tags.items()},
    }

    if executor == RAMPING_VUS:
        return ScenarioOptions(
            start_vus=_int_option(name, "start_vus", raw.get("start_vus", 0)),
            graceful_ramp_down=parse_duration(raw.get("graceful_ramp_down", DEFAULT_GRACEFUL_RAMP_DOWN)),
            **common,
        )

    if "pre_allocated_vus" not in raw:
        raise ConfigurationError(f"Scenario '{name}': 'pre_allocated_vus' is required for {executor}")
    pre_allocated = _int_option(name, "pre_allocated_vus", raw["pre_allocated_vus"])
    max_vus = _int_option(name, "max_vus", raw.get("max_vus", pre_allocated))
    if max_vus < pre_allocated:
        raise ConfigurationError(f"Scenario '{name}': max_vus ({max_vus}) < pre_allocated_vus ({pre_allocated})")
    time_unit = parse_duration(raw.get("time_unit", 1))
    if time_unit <= 0:
        raise ConfigurationError(f"Scenario '{name}': 'time_unit' must be positive")
    return ScenarioOptions(
        start_rate=_number_option(name, "start_rate", raw.get("start_rate", 0)),
        time_unit=time_unit,
        pre_allocated_vus=pre_allocated,
        max_vus=max_vus,
        **common,
    )


def _trend_stats(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ConfigurationError("'summary_trend_stats' must be a non-empty list")
    stats = []
    for stat in raw:
        match = _TREND_STAT.match(str(stat).strip())
        if not match or (match.group(2) is not None and not 0 <= float(match.group(2)) <= 100):
            raise ConfigurationError(f"Invalid summary trend stat: {stat!r}")
        stats.append(match.group(1))
    return tuple(stats)


def options_from_dict(raw: Mapping[str, Any], env: str | None = None) -> RunOptions:
    """
    Build :class:`RunOptions` from a parsed run file.

    Args:
        raw: Mapping with the keys documented in the module docstring.
        env: Environment profile for defaults (``LOADGEN_ENV`` if None).
    """
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Run configuration must be a mapping")
    unknown = set(raw) - _RUN_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown run option(s): {sorted(unknown)}")

    defaults = environment_settings(env)

    scenarios_raw = raw.get("scenarios")
    if not isinstance(scenarios_raw, Mapping) or not scenarios_raw:
        raise ConfigurationError("'scenarios' must be a non-empty mapping")
    scenarios = tuple(scenario_from_dict(str(name), spec) for name, spec in scenarios_raw.items())

    headers = raw.get("default_headers") or {}
    if not isinstance(headers, Mapping):
        raise ConfigurationError("'default_headers' must be a mapping")

    request_timeout = parse_duration(raw.get("request_timeout", defaults["request_timeout"]))
    if request_timeout <= 0:
        raise ConfigurationError("'request_timeout' must be positive")
    check_interval = parse_duration(
        raw.get("threshold_check_interval", defaults["threshold_check_interval"])
    )
    if check_interval <= 0:
        raise ConfigurationError("'threshold_check_interval' must be positive")

    max_duration = raw.get("max_duration")
    return RunOptions(
        scenarios=scenarios,
        thresholds=tuple(thresholds_from_config(raw.get("thresholds"))),
        base_url=str(raw.get("base_url") or defaults["base_url"]),
        insecure_skip_tls_verify=bool(
            raw.get("insecure_skip_tls_verify", defaults["insecure_skip_tls_verify"])
        ),
        default_headers={str(key): str(value) for key, value in headers.items()},
        request_timeout=request_timeout,
        max_duration=parse_duration(max_duration) if max_duration is not None else None,
        summary_trend_stats=_trend_stats(raw.get("summary_trend_stats", defaults["summary_trend_stats"])),
        threshold_check_interval=check_interval,
    )


def load_run_options(path: str | Path, env: str | None = None) -> RunOptions:
    """Read a YAML run file and validate it."""
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read run configuration '{path}': {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in '{path}': {exc}") from exc

    logger.debug("Loaded run configuration from %s", path)
    return options_from_dict(raw or {}, env=env)
