"""
Thread-safe in-memory storage for users and subscriptions.

The mock target is served by a threaded WSGI server while dozens of
virtual users sign up concurrently, so every read-modify-write happens
under one lock.  Nothing is persisted; a fresh app gets a fresh store.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import Any

from werkzeug.security import check_password_hash, generate_password_hash


@dataclass
class User:
    id: int
    email: str
    password_hash: str
    mobile: str = ""
    admin: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Public profile; never includes the password hash."""
        return {"id": self.id, "email": self.email, "mobile": self.mobile, "admin": self.admin}


@dataclass
class Subscription:
    id: int
    user_id: int
    currency_pair: str
    threshold: float
    direction: str
    notification_channels: list[str] = field(default_factory=list)
    status: str = "ACTIVE"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "currencyPair": self.currency_pair,
            "threshold": self.threshold,
            "direction": self.direction,
            "notificationChannels": list(self.notification_channels),
            "status": self.status,
        }


class DuplicateUserError(Exception):
    """Raised when an email is already registered."""


class InMemoryStore:
    """Users keyed by email and subscriptions keyed by owner."""

    def __init__(self, hash_method: str = "pbkdf2:sha256") -> None:
        self._lock = threading.Lock()
        self._hash_method = hash_method
        self._user_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)
        self._users: dict[str, User] = {}
        self._subscriptions: dict[int, list[Subscription]] = {}

    def create_user(self, email: str, password: str, mobile: str = "", admin: bool = False) -> User:
        password_hash = generate_password_hash(password, method=self._hash_method)
        with self._lock:
            if email in self._users:
                raise DuplicateUserError(email)
            user = User(next(self._user_ids), email, password_hash, mobile, admin)
            self._users[email] = user
            return user

    def authenticate(self, email: str, password: str) -> User | None:
        with self._lock:
            user = self._users.get(email)
        if user is None or not check_password_hash(user.password_hash, password):
            return None
        return user

    def add_subscription(
        self,
        user_id: int,
        currency_pair: str,
        threshold: float,
        direction: str,
        notification_channels: list[str],
    ) -> Subscription:
        with self._lock:
            subscription = Subscription(
                id=next(self._subscription_ids),
                user_id=user_id,
                currency_pair=currency_pair,
                threshold=threshold,
                direction=direction,
                notification_channels=list(notification_channels),
            )
            self._subscriptions.setdefault(user_id, []).append(subscription)
            return subscription

    def subscriptions_for(self, user_id: int) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions.get(user_id, []))

    def user_count(self) -> int:
        with self._lock:
            return len(self._users)
