"""
Shared pytest fixtures for the load-test harness suite.

Unit tests get a fresh :class:`MetricsRegistry` per test and build
virtual users and HTTP clients around fakes.  Integration tests run the
Flask mock target on a real threaded WSGI server so executors and
scenarios talk HTTP exactly as they would against the real service.

Key Concepts Demonstrated:
- Fixture scopes (function, session) and fixture factories
- Live server in a background thread with a free port
- Environment variables set before importing the code under test
- Faker for generated identities
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from faker import Faker
from werkzeug.serving import make_server

# Set testing environment before importing project modules
os.environ["LOADGEN_ENV"] = "testing"
os.environ["MOCK_TARGET_ENV"] = "testing"

from loadgen.http import build_client_factory
from loadgen.metrics import MetricsRegistry
from loadgen.vu import VirtualUser
from mock_target import create_app

# Initialize Faker for generating test data
fake = Faker()


# -----------------------------------------------------------------------------
# Harness Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def registry() -> MetricsRegistry:
    """Provide a fresh collector so no sample leaks between tests."""
    return MetricsRegistry()


@pytest.fixture
def vu_factory(registry) -> Callable[..., VirtualUser]:
    """
    Factory fixture for virtual users bound to the test's registry.

    Example:
        def test_something(vu_factory, live_target):
            vu = vu_factory(base_url=live_target)
            vu.run_iteration(user_scenario)
    """
    counter = iter(range(1, 10_000))

    def _create(base_url: str | None = None, scenario: str = "test", **kwargs: Any) -> VirtualUser:
        http_factory = build_client_factory(base_url=base_url, timeout=5.0) if base_url else None
        return VirtualUser(next(counter), scenario, registry, http_factory=http_factory, **kwargs)

    return _create


@pytest.fixture
def identity() -> dict[str, str]:
    """Generated signup identity."""
    return {
        "email": fake.unique.email(),
        "password": fake.password(length=12),
        "mobile": fake.msisdn(),
    }


# -----------------------------------------------------------------------------
# Live Mock Target Fixtures
# -----------------------------------------------------------------------------


class _LiveServer:
    """Threaded werkzeug server on an ephemeral port."""

    def __init__(self, app) -> None:
        self.app = app
        self._server = make_server("127.0.0.1", 0, app, threaded=True)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def root_url(self) -> str:
        return f"http://127.0.0.1:{self._server.server_port}"

    @property
    def base_url(self) -> str:
        return self.root_url + self.app.config["API_PREFIX"]

    def start(self) -> _LiveServer:
        self._thread.start()
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5)


@pytest.fixture(scope="session")
def live_server() -> Iterator[_LiveServer]:
    """Mock target shared by the whole session; every signup uses a unique email."""
    server = _LiveServer(create_app("testing")).start()
    yield server
    server.stop()


@pytest.fixture(scope="session")
def live_target(live_server) -> str:
    """Base URL (``http://127.0.0.1:<port>/api/v1``) of the shared mock target."""
    return live_server.base_url


@pytest.fixture
def live_server_factory() -> Iterator[Callable[..., _LiveServer]]:
    """
    Start extra mock targets with config overrides, stopped after the test.

    Example:
        slow = live_server_factory(RESPONSE_DELAY_SECONDS=0.2)
    """
    servers: list[_LiveServer] = []

    def _start(**overrides: Any) -> _LiveServer:
        server = _LiveServer(create_app("testing", **overrides)).start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        server.stop()
