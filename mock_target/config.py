"""
Configuration for the mock FX subscription target.

Same inheritance-based layout as the harness configuration: a shared
``Config`` base with environment-variable overrides and per-environment
subclasses resolved by ``get_config``.

Key Concepts Demonstrated:
- Inheritance-based configuration hierarchy
- HS256 signing secret supplied through the environment
- Artificial response delay for exercising latency thresholds
"""

from __future__ import annotations

import os


class Config:
    """Base configuration shared by all environments."""

    SECRET_KEY: str = os.environ.get("SECRET_KEY", "mock-target-dev-secret")
    JWT_SECRET: str = os.environ.get("MOCK_TARGET_JWT_SECRET", "mock-target-jwt-secret-not-for-production")
    # How many hours a newly issued token remains valid before expiring
    JWT_EXPIRY_HOURS: int = int(os.environ.get("JWT_EXPIRY_HOURS", "24"))
    # Seconds of tolerance for clock differences between issuer and verifier
    JWT_CLOCK_SKEW_SECONDS: int = int(os.environ.get("JWT_CLOCK_SKEW_SECONDS", "30"))

    # Mirrors the real service's versioned API root.
    API_PREFIX: str = os.environ.get("MOCK_TARGET_API_PREFIX", "/api/v1")
    # Werkzeug hash method for stored passwords.
    PASSWORD_HASH_METHOD: str = "pbkdf2:sha256"
    # Added to every response; lets tests push latency past a threshold.
    RESPONSE_DELAY_SECONDS: float = float(os.environ.get("MOCK_TARGET_RESPONSE_DELAY", "0"))


class DevelopmentConfig(Config):
    DEBUG: bool = True
    TESTING: bool = False


class TestingConfig(Config):
    """
    Configuration for the automated test suite.

    A low PBKDF2 iteration count keeps signup and login fast enough that
    executor tests measure the harness, not password hashing.
    """

    DEBUG: bool = False
    TESTING: bool = True
    PASSWORD_HASH_METHOD: str = "pbkdf2:sha256:1000"
    JWT_EXPIRY_HOURS: int = 1


class ProductionConfig(Config):
    DEBUG: bool = False
    TESTING: bool = False


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Resolve a configuration class by environment name.

    Args:
        env: One of ``"development"``, ``"testing"``, or
            ``"production"``.  When ``None``, the ``MOCK_TARGET_ENV``
            environment variable is consulted, falling back to
            ``"development"`` if unset.
    """
    if env is None:
        env = os.environ.get("MOCK_TARGET_ENV", "development")
    return config.get(env, config["default"])
