"""
Mock FX subscription API endpoints.

Implements just enough of the real service's contract for the harness
to be tested end to end.  All routes live on ``api_bp`` and are mounted
under ``API_PREFIX`` (``/api/v1`` by default) by the application factory.

Endpoints:
    GET  /health              -- Liveness probe.
    POST /auth/signup         -- Create a user (201, 400, 409).
    POST /auth/login          -- Exchange credentials for a JWT (200, 400, 401).
    POST /subscriptions       -- Create a rate alert for the bearer (201, 400, 401).
    GET  /subscriptions/my    -- List the bearer's subscriptions (200, 401).

Key Concepts Demonstrated:
- Blueprint-based route organisation
- Bearer token extraction and JWT verification
- Consistent JSON error responses
"""

from __future__ import annotations

import logging
from typing import Any

import jwt as pyjwt
from flask import Blueprint, Response, current_app, g, jsonify, request

from .jwt import create_token, decode_token
from .store import DuplicateUserError, InMemoryStore

logger = logging.getLogger(__name__)

api_bp = Blueprint("mock_api", __name__)

DIRECTIONS = {"ABOVE", "BELOW"}
NOTIFICATION_CHANNELS = {"email", "sms", "push"}


# =====================================================================
# Helper Functions
# =====================================================================


def _json_error(message: str, status_code: int) -> tuple[Response, int]:
    return jsonify({"error": message}), status_code


def _store() -> InMemoryStore:
    return current_app.extensions["mock_store"]


def _validate_required_fields(data: dict[str, Any], required_fields: list[str]) -> str | None:
    """Return an error for the first missing or blank string field, else ``None``."""
    for field in required_fields:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            return f"'{field}' is required"
    return None


def _extract_bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def _authenticate() -> tuple[Response, int] | None:
    """Load the bearer's claims into ``g.claims`` or return a 401 response."""
    token = _extract_bearer_token()
    if token is None:
        return _json_error("Missing or invalid Authorization header", 401)
    try:
        g.claims = decode_token(
            token,
            current_app.config["JWT_SECRET"],
            leeway=current_app.config.get("JWT_CLOCK_SKEW_SECONDS", 30),
        )
    except pyjwt.InvalidTokenError:
        return _json_error("Invalid or expired token", 401)
    return None


def _validate_subscription(data: dict[str, Any]) -> str | None:
    missing = _validate_required_fields(data, ["currencyPair", "direction"])
    if missing:
        return missing
    threshold = data.get("threshold")
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold <= 0:
        return "'threshold' must be a positive number"
    if data["direction"] not in DIRECTIONS:
        return "'direction' must be ABOVE or BELOW"
    channels = data.get("notificationChannels")
    if not isinstance(channels, list) or not channels:
        return "'notificationChannels' must be a non-empty list"
    if not set(channels) <= NOTIFICATION_CHANNELS:
        return "'notificationChannels' contains an unknown channel"
    return None


# =====================================================================
# API Endpoints
# =====================================================================


@api_bp.route("/health", methods=["GET"])
def health_check() -> tuple[Response, int]:
    return jsonify({"status": "healthy", "service": "mock-fx-subscriptions"}), 200


@api_bp.route("/auth/signup", methods=["POST"])
def signup() -> tuple[Response, int]:
    """
    Register a new user.

    Returns:
        201 with the created user on success.
        400 if ``email`` or ``password`` is missing.
        409 if the email is already registered.
    """
    data = request.get_json(silent=True) or {}
    missing = _validate_required_fields(data, ["email", "password"])
    if missing:
        return _json_error(missing, 400)

    try:
        user = _store().create_user(
            email=data["email"].strip(),
            password=data["password"],
            mobile=str(data.get("mobile") or ""),
            admin=bool(data.get("admin", False)),
        )
    except DuplicateUserError:
        return _json_error("User already exists", 409)
    return jsonify(user.to_dict()), 201


@api_bp.route("/auth/login", methods=["POST"])
def login() -> tuple[Response, int]:
    """
    Authenticate with ``username`` (the signup email) and ``password``.

    Returns:
        200 with ``token`` on success.
        400 if required fields are missing.
        401 if credentials are incorrect.
    """
    data = request.get_json(silent=True) or {}
    missing = _validate_required_fields(data, ["username", "password"])
    if missing:
        return _json_error(missing, 400)

    user = _store().authenticate(data["username"].strip(), data["password"])
    if user is None:
        return _json_error("Invalid username or password", 401)

    token = create_token(
        user_id=user.id,
        username=user.email,
        secret=current_app.config["JWT_SECRET"],
        expiry_hours=current_app.config["JWT_EXPIRY_HOURS"],
    )
    return jsonify({"token": token}), 200


@api_bp.route("/subscriptions", methods=["POST"])
def create_subscription() -> tuple[Response, int]:
    """
    Create a subscription owned by the bearer.

    Returns:
        201 with the stored subscription.
        400 on an invalid payload.
        401 without a valid bearer token.
    """
    denied = _authenticate()
    if denied is not None:
        return denied

    data = request.get_json(silent=True) or {}
    problem = _validate_subscription(data)
    if problem:
        return _json_error(problem, 400)

    subscription = _store().add_subscription(
        user_id=g.claims["user_id"],
        currency_pair=data["currencyPair"].strip(),
        threshold=float(data["threshold"]),
        direction=data["direction"],
        notification_channels=data["notificationChannels"],
    )
    return jsonify(subscription.to_dict()), 201


@api_bp.route("/subscriptions/my", methods=["GET"])
def my_subscriptions() -> tuple[Response, int]:
    """List the bearer's subscriptions as ``{"subscriptions": [...]}``."""
    denied = _authenticate()
    if denied is not None:
        return denied

    subscriptions = _store().subscriptions_for(g.claims["user_id"])
    return jsonify({"subscriptions": [item.to_dict() for item in subscriptions]}), 200
