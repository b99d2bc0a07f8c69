"""
Typed request and response bodies for the FX subscription API.

Scenarios build requests from these dataclasses instead of hand-written
dicts, so a misspelt field is a ``TypeError`` at construction time
rather than a silent ``400`` under load.  ``to_payload`` produces the
camelCase JSON the service expects; ``from_response`` reads a
:class:`~loadgen.http.Response` leniently, because under load a body
may be empty or an HTML error page and the iteration must carry on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loadgen.exceptions import ParseError
from loadgen.http import Response

DIRECTIONS = ("ABOVE", "BELOW")
NOTIFICATION_CHANNELS = ("email", "sms", "push")


@dataclass(frozen=True)
class SignupRequest:
    email: str
    password: str
    mobile: str = "+1234567890"
    admin: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "password": self.password,
            "mobile": self.mobile,
            "admin": self.admin,
        }


@dataclass(frozen=True)
class LoginRequest:
    """Login uses the signup email as ``username``."""

    username: str
    password: str

    def to_payload(self) -> dict[str, Any]:
        return {"username": self.username, "password": self.password}


@dataclass(frozen=True)
class LoginResponse:
    token: str | None = None

    @classmethod
    def from_response(cls, response: Response) -> LoginResponse:
        """Extract the bearer token; ``token`` is ``None`` when absent or unreadable."""
        try:
            token = response.json("token")
        except ParseError:
            return cls()
        return cls(token=token if isinstance(token, str) and token else None)


@dataclass(frozen=True)
class SubscriptionCreateRequest:
    """
    A rate alert: notify through ``notification_channels`` when
    ``currency_pair`` crosses ``threshold`` in ``direction``.
    """

    currency_pair: str
    threshold: float
    direction: str
    notification_channels: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {self.direction!r}")
        if not self.notification_channels:
            raise ValueError("at least one notification channel is required")
        unknown = set(self.notification_channels) - set(NOTIFICATION_CHANNELS)
        if unknown:
            raise ValueError(f"unknown notification channel(s): {sorted(unknown)}")

    def to_payload(self) -> dict[str, Any]:
        return {
            "currencyPair": self.currency_pair,
            "threshold": self.threshold,
            "direction": self.direction,
            "notificationChannels": list(self.notification_channels),
        }


@dataclass(frozen=True)
class SubscriptionListResponse:
    """``GET /subscriptions/my``; ``subscriptions`` is ``None`` unless the body holds a list."""

    subscriptions: list[dict[str, Any]] | None = None

    @property
    def is_list(self) -> bool:
        return isinstance(self.subscriptions, list)

    @classmethod
    def from_response(cls, response: Response) -> SubscriptionListResponse:
        try:
            subscriptions = response.json("subscriptions")
        except ParseError:
            return cls()
        return cls(subscriptions=subscriptions if isinstance(subscriptions, list) else None)
