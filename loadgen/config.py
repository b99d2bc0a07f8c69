"""
Environment configuration for the load-test harness.

Follows the familiar Flask pattern: a shared ``Config`` base class holds
defaults and environment-specific subclasses (``DevelopmentConfig``,
``TestingConfig``, ``ProductionConfig``) override only what differs.
``get_config`` resolves the class from ``LOADGEN_ENV`` or an explicit
argument.

Values that identify the target or carry credentials are never baked
into scenarios.  They come from environment variables, read at call
time by :func:`environment_settings` so that a process (or a test using
``monkeypatch.setenv``) can change them without re-importing:

- ``TARGET_BASE_URL`` -- base URL every relative request path joins
- ``LOADTEST_USER_PASSWORD`` -- password used for generated accounts
- ``LOADGEN_REQUEST_TIMEOUT`` -- default per-request timeout (seconds)
- ``LOADGEN_INSECURE_SKIP_TLS_VERIFY`` -- ``1``/``true`` to skip TLS checks
- ``LOG_LEVEL`` -- root logging level

The YAML run file (see :mod:`loadgen.options`) is layered on top.

Key Concepts Demonstrated:
- Inheritance-based configuration hierarchy
- Environment variable overrides with sensible defaults
- Non-routable target for tests so nothing leaves the machine by accident
"""

from __future__ import annotations

import os
from typing import Any

from loadgen.exceptions import ConfigurationError

_TRUTHY = {"1", "true", "yes", "on"}


class Config:
    """Base configuration with default settings."""

    ENV_NAME: str = "base"
    TARGET_BASE_URL: str = "https://localhost:8443/api/v1"
    LOADTEST_USER_PASSWORD: str = "password123"
    REQUEST_TIMEOUT: float = 60.0
    INSECURE_SKIP_TLS_VERIFY: bool = False
    LOG_LEVEL: str = "INFO"

    # How often thresholds are checked while the run is in progress.
    THRESHOLD_CHECK_INTERVAL: float = 2.0
    SUMMARY_TREND_STATS: tuple[str, ...] = ("avg", "min", "med", "max", "p(90)", "p(95)")


class DevelopmentConfig(Config):
    """Local runs against a developer stack with self-signed certificates."""

    ENV_NAME = "development"
    INSECURE_SKIP_TLS_VERIFY = True
    LOG_LEVEL = "DEBUG"


class TestingConfig(Config):
    """Test-suite defaults: short timeouts, nothing reachable by default."""

    ENV_NAME = "testing"
    # TEST-NET-1 address; tests always point at the mock target explicitly.
    TARGET_BASE_URL = "http://192.0.2.1:9/api/v1"
    REQUEST_TIMEOUT = 2.0
    THRESHOLD_CHECK_INTERVAL = 0.2


class ProductionConfig(Config):
    """Shared load environments: TLS is always verified."""

    ENV_NAME = "production"
    INSECURE_SKIP_TLS_VERIFY = False
    LOG_LEVEL = "INFO"


# Configuration mapping for easy access
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Get the configuration class for the specified environment.

    Args:
        env: Environment name (development, testing, production).
             If None, uses the LOADGEN_ENV environment variable.

    Returns:
        Configuration class for the specified environment.
    """
    if env is None:
        env = os.environ.get("LOADGEN_ENV", "development")
    return config.get(env, config["default"])


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def environment_settings(env: str | None = None) -> dict[str, Any]:
    """
    Resolve run defaults: environment class first, variables on top.

    Returns:
        A dict keyed like the YAML run file (``base_url``,
        ``request_timeout`` ...) plus ``user_password`` and ``log_level``.
    """
    cfg = get_config(env)
    return {
        "base_url": os.environ.get("TARGET_BASE_URL", "").strip() or cfg.TARGET_BASE_URL,
        "user_password": os.environ.get("LOADTEST_USER_PASSWORD") or cfg.LOADTEST_USER_PASSWORD,
        "request_timeout": _env_float("LOADGEN_REQUEST_TIMEOUT", cfg.REQUEST_TIMEOUT),
        "insecure_skip_tls_verify": _env_flag(
            "LOADGEN_INSECURE_SKIP_TLS_VERIFY", cfg.INSECURE_SKIP_TLS_VERIFY
        ),
        "log_level": (os.environ.get("LOG_LEVEL", "").strip() or cfg.LOG_LEVEL).upper(),
        "threshold_check_interval": cfg.THRESHOLD_CHECK_INTERVAL,
        "summary_trend_stats": list(cfg.SUMMARY_TREND_STATS),
    }
