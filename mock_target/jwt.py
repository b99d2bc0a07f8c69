"""
JWT issuing and verification for the mock target.

Tokens carry ``user_id``, ``username``, ``iat`` and ``exp`` and are
signed with HS256 using the secret from ``JWT_SECRET``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

REQUIRED_TOKEN_CLAIMS = ["user_id", "username", "iat", "exp"]


def create_token(user_id: int, username: str, secret: str, expiry_hours: int) -> str:
    """
    Create an HS256-signed JWT containing canonical auth claims.

    Raises:
        ValueError: If *user_id* is not positive or *username* is blank.
    """
    if int(user_id) <= 0:
        raise ValueError("user_id must be a positive integer")
    if not isinstance(username, str) or not username.strip():
        raise ValueError("username must be a non-empty string")

    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "user_id": int(user_id),
        "username": username,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=int(expiry_hours))).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_token(token: str, secret: str, leeway: int = 30) -> dict[str, Any]:
    """
    Verify *token* and return its claims.

    Raises:
        jwt.InvalidTokenError: If the token is expired, malformed, has an
            invalid signature, or lacks a required claim.
    """
    payload = jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        options={"require": REQUIRED_TOKEN_CLAIMS},
        leeway=leeway,
    )
    if not isinstance(payload.get("user_id"), int) or payload["user_id"] <= 0:
        raise jwt.InvalidTokenError("Invalid user_id claim")
    return payload
