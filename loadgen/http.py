"""
Timed HTTP client used by scenarios.

Wraps a :class:`requests.Session` so that every call:

- resolves relative paths against the run's base URL and merges the
  run-level default headers,
- is timed and fed into the built-in ``http_*`` metrics (scenario
  authors get request metrics without writing any code),
- never raises on transport failure -- a refused connection, timeout
  or TLS error comes back as a :class:`Response` with ``status == 0``
  and ``error`` set, so the iteration can carry on with whatever data
  it has.

Each virtual user gets its own client and session, mirroring one
connection pool per simulated browser.

Key Concepts Demonstrated:
- Normalised response object with lazily parsed JSON body
- Transport errors mapped to data instead of exceptions
- Per-request timeout and TLS-verification toggle
"""

from __future__ import annotations

import json as jsonlib
import logging
import time
from collections.abc import Callable, Container, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import requests
import urllib3
from requests.structures import CaseInsensitiveDict

from loadgen.exceptions import ParseError

if TYPE_CHECKING:
    from loadgen.metrics import SampleSink
    from loadgen.vu import VirtualUser

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "fx-loadgen/0.1"
DEFAULT_EXPECTED_STATUSES = range(200, 400)

# Error codes attached to responses that never reached an HTTP status.
ERROR_GENERIC = 1000
ERROR_TIMEOUT = 1050
ERROR_CONNECTION = 1210
ERROR_TLS = 1220

_MISSING = object()


@dataclass(frozen=True)
class Timings:
    """
    Request phase breakdown in milliseconds.

    ``requests`` reuses pooled connections and does not expose DNS,
    connect or TLS handshake times, so ``blocked``, ``connecting`` and
    ``tls_handshaking`` stay at zero and connection setup is counted in
    ``waiting`` (time to response headers).  ``duration`` is
    ``sending + waiting + receiving``.
    """

    blocked: float = 0.0
    connecting: float = 0.0
    tls_handshaking: float = 0.0
    sending: float = 0.0
    waiting: float = 0.0
    receiving: float = 0.0
    duration: float = 0.0


class Response:
    """Normalised result of one HTTP call."""

    def __init__(
        self,
        *,
        method: str,
        url: str,
        status: int,
        headers: Mapping[str, str] | None = None,
        body: bytes = b"",
        timings: Timings | None = None,
        error: str | None = None,
        error_code: int = 0,
    ) -> None:
        self.method = method
        self.url = url
        self.status = status
        self.headers = CaseInsensitiveDict(headers or {})
        self.body = body
        self.timings = timings or Timings()
        self.error = error
        self.error_code = error_code
        self._parsed: Any = _MISSING

    def __repr__(self) -> str:
        return f"Response(method={self.method!r}, url={self.url!r}, status={self.status})"

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status < 400

    def json(self, selector: str | None = None) -> Any:
        """
        Return the decoded JSON body, or one value inside it.

        Args:
            selector: Optional dotted path such as ``"token"`` or
                ``"subscriptions.0.id"``.  A path that does not exist
                yields ``None``.

        Raises:
            ParseError: If the body is empty or not valid JSON.
        """
        if self._parsed is _MISSING:
            if not self.body:
                raise ParseError(f"Empty body from {self.method} {self.url}")
            try:
                self._parsed = jsonlib.loads(self.body)
            except ValueError as exc:
                raise ParseError(f"Invalid JSON from {self.method} {self.url}: {exc}") from exc

        if selector is None:
            return self._parsed

        current = self._parsed
        for part in selector.split("."):
            if isinstance(current, dict):
                current = current.get(part)
            elif isinstance(current, list) and part.lstrip("-").isdigit():
                index = int(part)
                current = current[index] if -len(current) <= index < len(current) else None
            else:
                return None
            if current is None:
                return None
        return current


class HttpClient:
    """
    Session-backed HTTP client that records timing metrics.

    Args:
        recorder: Where samples go -- normally the owning VU's recorder.
        base_url: Prefix for relative URLs.
        default_headers: Headers sent with every request; per-request
            headers win on conflict.
        insecure_skip_tls_verify: Disable certificate verification.
            Only for test environments with self-signed certificates.
        timeout: Default per-request timeout in seconds.
        session: Pre-built session (tests inject fakes here).
        guard: Called before and after each request; raises to abort
            the call when the iteration has been abandoned.
        clock: High-resolution time source.
    """

    def __init__(
        self,
        *,
        recorder: SampleSink,
        base_url: str = "",
        default_headers: Mapping[str, str] | None = None,
        insecure_skip_tls_verify: bool = False,
        timeout: float = 60.0,
        session: requests.Session | None = None,
        guard: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._recorder = recorder
        self.base_url = base_url
        self.default_headers = {"User-Agent": DEFAULT_USER_AGENT, **dict(default_headers or {})}
        self.timeout = timeout
        self._guard = guard or (lambda: None)
        self._clock = clock
        self._session = session if session is not None else requests.Session()
        self._session.verify = not insecure_skip_tls_verify
        if insecure_skip_tls_verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def close(self) -> None:
        self._session.close()

    def _resolve(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self.base_url:
            return url
        return urljoin(self.base_url.rstrip("/") + "/", url.lstrip("/"))

    def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        *,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        tags: Mapping[str, str] | None = None,
        name: str | None = None,
        metric: str | None = None,
        expected_statuses: Container[int] | None = None,
    ) -> Response:
        """
        Send one request, record its metrics and return the response.

        Args:
            method: HTTP verb.
            url: Absolute URL or path relative to ``base_url``.
            body: Raw body (``str``/``bytes``); dicts and lists are JSON
                encoded.
            json: Value to JSON-encode as the body; sets
                ``Content-Type: application/json`` unless given.
            headers: Per-request headers.
            timeout: Seconds before giving up; defaults to the client's.
            tags: Extra labels for this request's samples.
            name: Label used to group URLs with variable parts.
            metric: Custom trend that also receives the duration.
            expected_statuses: Statuses that do not count as failed
                (``200``–``399`` by default).

        Returns:
            A :class:`Response`; ``status == 0`` on transport failure.
        """
        self._guard()
        method = method.upper()
        full_url = self._resolve(url)
        merged_headers = CaseInsensitiveDict(self.default_headers)
        merged_headers.update(headers or {})

        payload = body
        if json is not None or isinstance(body, (dict, list)):
            payload = jsonlib.dumps(json if json is not None else body).encode("utf-8")
            if "Content-Type" not in merged_headers:
                merged_headers["Content-Type"] = "application/json"
        elif isinstance(payload, str):
            payload = payload.encode("utf-8")

        status = 0
        response_headers: Mapping[str, str] = {}
        content = b""
        error: str | None = None
        error_code = 0

        started = self._clock()
        headers_received = started
        try:
            raw = self._session.request(
                method,
                full_url,
                data=payload,
                headers=merged_headers,
                timeout=timeout if timeout is not None else self.timeout,
                stream=True,
            )
            headers_received = self._clock()
            content = raw.content
            status = raw.status_code
            response_headers = raw.headers
        except requests.Timeout as exc:
            error, error_code = f"request timeout: {exc}", ERROR_TIMEOUT
        except requests.exceptions.SSLError as exc:
            error, error_code = f"tls error: {exc}", ERROR_TLS
        except requests.ConnectionError as exc:
            error, error_code = f"connection error: {exc}", ERROR_CONNECTION
        except requests.RequestException as exc:
            error, error_code = f"request failed: {exc}", ERROR_GENERIC
        finished = self._clock()

        if error is not None:
            headers_received = finished
            logger.debug("%s %s failed: %s", method, full_url, error)

        # An iteration abandoned while this call was in flight records nothing.
        self._guard()

        timings = Timings(
            waiting=(headers_received - started) * 1000.0,
            receiving=(finished - headers_received) * 1000.0,
            duration=(finished - started) * 1000.0,
        )
        response = Response(
            method=method,
            url=full_url,
            status=status,
            headers=response_headers,
            body=content,
            timings=timings,
            error=error,
            error_code=error_code,
        )
        expected = status in (expected_statuses or DEFAULT_EXPECTED_STATUSES)
        self._record(response, payload, expected, name, metric, tags)
        return response

    def _record(
        self,
        response: Response,
        payload: Any,
        expected: bool,
        name: str | None,
        metric: str | None,
        tags: Mapping[str, str] | None,
    ) -> None:
        labels = {
            "method": response.method,
            "url": response.url,
            "name": name or response.url,
            "status": str(response.status),
            "expected_response": "true" if expected else "false",
        }
        if response.error_code:
            labels["error_code"] = str(response.error_code)
        if tags:
            labels.update({key: str(val) for key, val in tags.items()})

        timings = response.timings
        record = self._recorder.record
        record("http_reqs", 1, labels)
        record("http_req_duration", timings.duration, labels)
        record("http_req_blocked", timings.blocked, labels)
        record("http_req_connecting", timings.connecting, labels)
        record("http_req_tls_handshaking", timings.tls_handshaking, labels)
        record("http_req_sending", timings.sending, labels)
        record("http_req_waiting", timings.waiting, labels)
        record("http_req_receiving", timings.receiving, labels)
        record("http_req_failed", not expected, labels)
        record("data_sent", len(payload) if isinstance(payload, bytes) else 0, labels)
        record("data_received", len(response.body), labels)
        if metric:
            record(metric, timings.duration, labels)

    # ---- verb helpers ------------------------------------------------

    def get(self, url: str, **kwargs: Any) -> Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return self.request("POST", url, body, **kwargs)

    def put(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return self.request("PUT", url, body, **kwargs)

    def patch(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return self.request("PATCH", url, body, **kwargs)

    def delete(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return self.request("DELETE", url, body, **kwargs)


def build_client_factory(
    *,
    base_url: str = "",
    default_headers: Mapping[str, str] | None = None,
    insecure_skip_tls_verify: bool = False,
    timeout: float = 60.0,
    session_factory: Callable[[], requests.Session] = requests.Session,
) -> Callable[[VirtualUser], HttpClient]:
    """
    Return a callable that builds one :class:`HttpClient` per VU.

    The client records through the VU's gated recorder and uses
    :meth:`VirtualUser.ensure_active` as its guard, so abandoned
    iterations stop issuing requests and stop recording.
    """

    def _factory(vu: VirtualUser) -> HttpClient:
        return HttpClient(
            recorder=vu.metrics,
            base_url=base_url,
            default_headers=default_headers,
            insecure_skip_tls_verify=insecure_skip_tls_verify,
            timeout=timeout,
            session=session_factory(),
            guard=vu.ensure_active,
        )

    return _factory
