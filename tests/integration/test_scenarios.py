"""
End-to-end iterations of the FX subscription scenarios.

Each test drives one virtual user through a whole scenario against the
live mock target and then inspects what the collector saw: request
counts, checks, custom metrics and group tags.  Think-time is patched
to zero so an iteration takes milliseconds.

Key SDET Concepts Demonstrated:
- Live-server integration tests with a real HTTP stack
- Asserting on observability output instead of return values
- Unreachable-target behaviour (failures are data, not crashes)
"""

from __future__ import annotations

import socket

import pytest

from loadgen.runner import declare_metrics
from loadgen.vu import IterationOutcome
from scenarios import api_load, subscription_flow

pytestmark = pytest.mark.integration


@pytest.fixture(autouse=True)
def _no_think_time(monkeypatch):
    monkeypatch.setattr(subscription_flow, "THINK_TIME", 0)
    monkeypatch.setattr(api_load, "THINK_TIME", 0)


@pytest.fixture
def closed_port_url() -> str:
    """Base URL of a local port nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"http://127.0.0.1:{port}/api/v1"


# =============================================================================
# Subscription Flow (ramping VUs)
# =============================================================================


def test_subscription_flow_single_iteration(registry, vu_factory, live_target):
    """Test that one iteration makes four calls and passes every check."""
    # Arrange
    declare_metrics(registry, subscription_flow.METRICS)
    vu = vu_factory(base_url=live_target, scenario="e2e")

    # Act
    outcome = vu.run_iteration(subscription_flow.user_scenario)

    # Assert
    assert outcome is IterationOutcome.COMPLETED
    assert registry.snapshot("http_reqs").total == 4
    checks = registry.snapshot("checks")
    assert checks.passes == 5
    assert checks.fails == 0
    assert registry.snapshot("custom_request_count").total == 4
    assert registry.snapshot("custom_failure_rate").rate == 0.0
    assert registry.snapshot("iterations").total == 1


def test_subscription_flow_records_endpoint_trends(registry, vu_factory, live_target):
    """Test that every endpoint trend got exactly one sample."""
    declare_metrics(registry, subscription_flow.METRICS)
    vu = vu_factory(base_url=live_target)

    vu.run_iteration(subscription_flow.user_scenario)

    for trend in ("signup_duration", "login_duration", "subscription_create_duration", "fetch_subscriptions_duration"):
        aggregate = registry.snapshot(trend)
        assert aggregate.count == 1, trend
        assert aggregate.min >= 0


def test_subscription_flow_groups(registry, vu_factory, live_target):
    """Test that requests are tagged with their group path."""
    vu = vu_factory(base_url=live_target)

    vu.run_iteration(subscription_flow.user_scenario)

    assert registry.snapshot("http_reqs", {"group": "::Authentication"}).total == 2
    assert registry.snapshot("http_reqs", {"group": "::Subscription Management"}).total == 2
    assert registry.snapshot("group_duration").count == 2


def test_subscription_flow_new_user_per_iteration(registry, vu_factory, live_target):
    """Test that repeated iterations never collide on signup."""
    vu = vu_factory(base_url=live_target)

    for _ in range(3):
        vu.run_iteration(subscription_flow.user_scenario)

    assert registry.snapshot("checks", {"check": "signup status is 201"}).passes == 3


def test_subscription_flow_against_unreachable_target(registry, vu_factory, closed_port_url):
    """Test that a dead target yields failed checks, not a crashed iteration."""
    # Arrange
    declare_metrics(registry, subscription_flow.METRICS)
    vu = vu_factory(base_url=closed_port_url)

    # Act
    outcome = vu.run_iteration(subscription_flow.user_scenario)

    # Assert
    assert outcome is IterationOutcome.COMPLETED
    assert registry.snapshot("http_reqs", {"status": "0"}).total == 4
    assert registry.snapshot("http_req_failed").rate == 1.0
    assert registry.snapshot("checks").passes == 0
    assert registry.snapshot("custom_failure_rate").rate == 1.0


# =============================================================================
# API Load (ramping arrival rate)
# =============================================================================


def test_api_load_single_iteration(registry, vu_factory, live_target):
    """Test the per-endpoint trends, status counters and six checks."""
    # Arrange
    declare_metrics(registry, api_load.METRICS)
    vu = vu_factory(base_url=live_target, scenario="api")

    # Act
    outcome = vu.run_iteration(api_load.user_scenario)

    # Assert
    assert outcome is IterationOutcome.COMPLETED
    checks = registry.snapshot("checks")
    assert checks.passes == 6
    assert checks.fails == 0
    assert registry.snapshot("signup_status_code").total == 201
    assert registry.snapshot("login_status_code").total == 200
    assert registry.snapshot("create_subscription_status_code").total == 201
    assert registry.snapshot("get_my_subscriptions_status_code").total == 200
    assert registry.snapshot("create_subscription_duration", {"status": "201"}).count == 1


def test_api_load_uses_vu_and_iteration_in_email(registry, vu_factory, live_target, monkeypatch):
    """Test that signup emails are derived from the VU id and iteration number."""
    # Arrange
    emails: list[str] = []
    original = api_load.iteration_email

    def _spy(vu_id, iteration):
        email = original(vu_id, iteration)
        emails.append(email)
        return email

    monkeypatch.setattr(api_load, "iteration_email", _spy)
    vu = vu_factory(base_url=live_target)

    # Act
    vu.run_iteration(api_load.user_scenario)
    vu.run_iteration(api_load.user_scenario)

    # Assert
    assert emails[0].startswith(f"user_{vu.id}_0_")
    assert emails[1].startswith(f"user_{vu.id}_1_")
