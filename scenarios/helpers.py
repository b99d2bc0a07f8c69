"""
Helper utilities shared by the FX subscription scenarios.

Provides endpoint paths, identity generation and randomised subscription
payloads.  Keeping these in one module avoids duplication across
scenario files and makes it easy to adjust data-generation strategies
in one place.

Key Concepts Demonstrated:
- Collision-free identity generation (UUID or VU id + iteration)
- Randomised payloads to defeat server-side caching and exercise
  varied code paths
- Credentials from the environment, never hard-coded in scenarios
"""

from __future__ import annotations

import os
import random
import uuid
from collections.abc import Sequence

from loadgen.config import get_config
from scenarios.models import DIRECTIONS, NOTIFICATION_CHANNELS, SubscriptionCreateRequest

# Paths are relative to the run's base_url (e.g. https://host:8443/api/v1).
SIGNUP_PATH = "/auth/signup"
LOGIN_PATH = "/auth/login"
SUBSCRIPTIONS_PATH = "/subscriptions"
MY_SUBSCRIPTIONS_PATH = "/subscriptions/my"

CURRENCY_PAIRS = ("GBP/USD", "USD/EUR", "EUR/JPY", "USD/JPY", "AUD/USD")
CHANNEL_POOLS: tuple[tuple[str, ...], ...] = (
    ("email",),
    ("sms",),
    ("email", "sms"),
    ("push",),
)

DEFAULT_MOBILE = "+1234567890"


def user_password() -> str:
    """Password for generated accounts: ``LOADTEST_USER_PASSWORD`` or the profile default."""
    return os.environ.get("LOADTEST_USER_PASSWORD") or get_config().LOADTEST_USER_PASSWORD


def random_email() -> str:
    """A globally unique address, safe across VUs, workers and repeated runs."""
    return f"user-{uuid.uuid4()}@example.com"


def iteration_email(vu_id: int, iteration: int) -> str:
    """
    Address derived from the VU and its iteration number.

    The random suffix keeps back-to-back runs from colliding on the
    same ``(vu, iteration)`` pair.
    """
    return f"user_{vu_id}_{iteration}_{random.randint(0, 9999)}@example.com"


def random_channels() -> tuple[str, ...]:
    """A random non-empty subset of the supported channels, in random order."""
    channels = list(NOTIFICATION_CHANNELS)
    random.shuffle(channels)
    return tuple(channels[: random.randint(1, len(channels))])


def auth_header(token: str | None) -> dict[str, str]:
    """
    Build bearer auth headers.

    A missing token still produces a header so the request goes out and
    the target's ``401`` is recorded as a failed check.
    """
    return {
        "Authorization": f"Bearer {token or ''}".rstrip(),
        "Accept": "application/json",
    }


def random_subscription(
    *,
    currency_pairs: Sequence[str] = CURRENCY_PAIRS,
    threshold_range: tuple[float, float] = (0.5, 2.5),
    decimals: int = 4,
    channel_pools: Sequence[tuple[str, ...]] | None = CHANNEL_POOLS,
) -> SubscriptionCreateRequest:
    """
    Build a valid subscription-create request with randomised fields.

    Args:
        currency_pairs: Pairs to choose from.
        threshold_range: Inclusive bounds for the alert threshold.
        decimals: Rounding applied to the threshold.
        channel_pools: Fixed channel combinations to pick from; ``None``
            picks a random non-empty subset instead.
    """
    low, high = threshold_range
    channels = random.choice(channel_pools) if channel_pools else random_channels()
    return SubscriptionCreateRequest(
        currency_pair=random.choice(currency_pairs),
        threshold=round(random.uniform(low, high), decimals),
        direction=random.choice(DIRECTIONS),
        notification_channels=tuple(channels),
    )
