"""
Integration tests for the load-test harness.

These tests run executors and scenarios for real, for fractions of a
second, against the mock FX subscription API served on a local port.
They demonstrate:
- Timing-bounded assertions on concurrency and arrival rate
- End-to-end scenario iterations over HTTP
- Threshold verdicts and exit codes of complete runs
"""
