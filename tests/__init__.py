"""
Test suite for the FX subscription load-test harness.

This package contains:
- unit/: Collector, stages, thresholds, HTTP wrapper, VU and config tests
  that need no network
- integration/: Executors, scenarios and full runs against the Flask
  mock target on a live local server
"""
