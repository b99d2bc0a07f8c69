"""
Per-endpoint API load under a ramping arrival rate.

Same four calls as :mod:`scenarios.subscription_flow`, but driven
open-loop: new users arrive at a scheduled rate however slow the target
gets, which is what exposes queueing under overload.  Each endpoint has
its own duration trend tagged with the response status, plus a
``*_status_code`` counter that sums the status values.  Creates accept
``200`` as well as ``201``.

Run with ``loadgen scenarios/api_load.yml``.
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
    iteration_email,
    user_password,
)
from scenarios.models import (
    LoginRequest,
    LoginResponse,
    SignupRequest,
    SubscriptionCreateRequest,
    SubscriptionListResponse,
)

ENDPOINTS = ("signup", "login", "create_subscription", "get_my_subscriptions")

METRICS = {
    **{f"{endpoint}_duration": (MetricType.TREND, True) for endpoint in ENDPOINTS},
    **{f"{endpoint}_status_code": MetricType.COUNTER for endpoint in ENDPOINTS},
}

THINK_TIME = 1.0

SUBSCRIPTION = SubscriptionCreateRequest(
    currency_pair="GBP/USD",
    threshold=1.25,
    direction="ABOVE",
    notification_channels=("email", "sms"),
)


def _observe(vu: VirtualUser, endpoint: str, response: Response) -> None:
    vu.metrics.record(f"{endpoint}_duration", response.timings.duration, {"status": str(response.status)})
    vu.metrics.record(f"{endpoint}_status_code", response.status)


def user_scenario(vu: VirtualUser) -> None:
    password = user_password()
    email = iteration_email(vu.id, vu.iteration)

    signup = SignupRequest(email=email, password=password)
    response = vu.http.post(SIGNUP_PATH, json=signup.to_payload(), name="signup")
    _observe(vu, "signup", response)
    vu.check(response, {"register status is 201 or 200": lambda r: r.status in (200, 201)})
    vu.sleep(THINK_TIME)

    login = LoginRequest(username=email, password=password)
    response = vu.http.post(LOGIN_PATH, json=login.to_payload(), name="login")
    _observe(vu, "login", response)
    token = LoginResponse.from_response(response).token
    vu.check(
        response,
        {
            "login status is 200": lambda r: r.status == 200,
            "login has token": lambda r: token is not None,
        },
    )
    vu.sleep(THINK_TIME)

    response = vu.http.post(
        SUBSCRIPTIONS_PATH,
        json=SUBSCRIPTION.to_payload(),
        headers=auth_header(token),
        name="create subscription",
    )
    _observe(vu, "create_subscription", response)
    vu.check(response, {"create subscription status is 201 or 200": lambda r: r.status in (200, 201)})
    vu.sleep(THINK_TIME)

    response = vu.http.get(MY_SUBSCRIPTIONS_PATH, headers=auth_header(token), name="my subscriptions")
    _observe(vu, "get_my_subscriptions", response)
    vu.check(
        response,
        {
            "get my subscriptions status is 200": lambda r: r.status == 200,
            "subscriptions is array": lambda r: SubscriptionListResponse.from_response(r).is_list,
        },
    )
    vu.sleep(THINK_TIME)
