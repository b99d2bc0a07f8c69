"""
Signup, login and subscription-management flow under ramping VUs.

Each iteration is one brand-new user walking the whole journey:

1. **Authentication** group -- sign up with a fresh email, log in with
   the same credentials and keep the bearer token.
2. **Subscription Management** group -- create a randomised rate alert,
   then list the user's subscriptions.

Every request feeds a per-endpoint duration trend, the shared
``custom_request_count`` counter and ``custom_failure_rate`` (true when
the status is not the one the endpoint promises).  A one-second pause
after each step mimics human think-time.

Run with ``loadgen scenarios/subscription_flow.yml``.

Key Concepts Demonstrated:
- Sequential dependency chain (login uses the signup email, later
  calls use the login token)
- Groups for per-phase breakdown in the summary
- Custom metrics declared up front so thresholds can be type-checked
"""

from __future__ import annotations

from loadgen.http import Response
from loadgen.metrics import MetricType
from loadgen.vu import VirtualUser
from scenarios.helpers import (
    LOGIN_PATH,
    MY_SUBSCRIPTIONS_PATH,
    SIGNUP_PATH,
    SUBSCRIPTIONS_PATH,
    auth_header,
    random_email,
    random_subscription,
    user_password,
)
from scenarios.models import LoginRequest, LoginResponse, SignupRequest

METRICS = {
    "signup_duration": (MetricType.TREND, True),
    "login_duration": (MetricType.TREND, True),
    "subscription_create_duration": (MetricType.TREND, True),
    "fetch_subscriptions_duration": (MetricType.TREND, True),
    "custom_failure_rate": MetricType.RATE,
    "custom_request_count": MetricType.COUNTER,
}

# Seconds between steps.
THINK_TIME = 1.0


def _track(vu: VirtualUser, response: Response, trend: str, expected_status: int) -> None:
    vu.metrics.record(trend, response.timings.duration)
    vu.metrics.record("custom_request_count", 1)
    vu.metrics.record("custom_failure_rate", response.status != expected_status)


def user_scenario(vu: VirtualUser) -> None:
    token: str | None = None

    with vu.group("Authentication"):
        signup = SignupRequest(email=random_email(), password=user_password())
        response = vu.http.post(SIGNUP_PATH, json=signup.to_payload(), name="signup")
        _track(vu, response, "signup_duration", 201)
        vu.check(response, {"signup status is 201": lambda r: r.status == 201})
        vu.sleep(THINK_TIME)

        login = LoginRequest(username=signup.email, password=signup.password)
        response = vu.http.post(LOGIN_PATH, json=login.to_payload(), name="login")
        _track(vu, response, "login_duration", 200)
        token = LoginResponse.from_response(response).token
        vu.check(
            response,
            {
                "login status is 200": lambda r: r.status == 200,
                "token present": lambda r: token is not None,
            },
        )
        vu.sleep(THINK_TIME)

    with vu.group("Subscription Management"):
        subscription = random_subscription()
        response = vu.http.post(
            SUBSCRIPTIONS_PATH,
            json=subscription.to_payload(),
            headers=auth_header(token),
            name="create subscription",
        )
        _track(vu, response, "subscription_create_duration", 201)
        vu.check(response, {"subscription status is 201": lambda r: r.status == 201})
        vu.sleep(THINK_TIME)

        response = vu.http.get(MY_SUBSCRIPTIONS_PATH, headers=auth_header(token), name="my subscriptions")
        _track(vu, response, "fetch_subscriptions_duration", 200)
        vu.check(response, {"fetch subscriptions status is 200": lambda r: r.status == 200})
        vu.sleep(THINK_TIME)
