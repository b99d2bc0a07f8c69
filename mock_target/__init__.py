"""
Mock FX subscription service Flask application factory.

A small stand-in for the real service used by the integration tests:
signup, login, create-subscription and list-subscriptions backed by an
in-memory store.  ``create_app`` follows the usual factory pattern so a
test can build an isolated instance with its own store and config.

Key Concepts Demonstrated:
- Application factory pattern (create_app)
- Blueprint-based route registration under a versioned prefix
- Per-app state kept in ``app.extensions`` instead of module globals
"""

from __future__ import annotations

import logging
import time
from typing import Any

from flask import Flask

from .config import get_config
from .store import InMemoryStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(config_name: str | None = None, **overrides: Any) -> Flask:
    """
    Create and configure the mock target application.

    Args:
        config_name: ``"development"``, ``"testing"`` or ``"production"``.
            When ``None``, resolved from ``MOCK_TARGET_ENV``.
        **overrides: Config keys applied after the config class, e.g.
            ``RESPONSE_DELAY_SECONDS=0.3`` in a latency test.

    Returns:
        A configured :class:`~flask.Flask` app with a fresh store.
    """
    app = Flask(__name__)
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    app.config.update(overrides)

    logger.info("Creating mock target app with config: %s", config_class.__name__)

    app.extensions["mock_store"] = InMemoryStore(hash_method=app.config["PASSWORD_HASH_METHOD"])

    delay = float(app.config.get("RESPONSE_DELAY_SECONDS") or 0)
    if delay > 0:

        @app.before_request
        def _slow_down() -> None:
            time.sleep(delay)

    from .routes import api_bp

    app.register_blueprint(api_bp, url_prefix=app.config["API_PREFIX"])
    return app
