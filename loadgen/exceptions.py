"""
Exception types raised by the load-test harness.

Only :class:`ConfigurationError` is meant to escape a run: it is raised
while options, stages, and thresholds are loaded, before any virtual
user starts.  Everything that goes wrong *during* an iteration is
converted into metrics at the iteration boundary.
"""

from __future__ import annotations


class LoadgenError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(LoadgenError, ValueError):
    """Invalid run configuration: stages, durations, executors, or thresholds."""


class ParseError(LoadgenError, ValueError):
    """A response body could not be decoded as the requested structure."""


class IterationInterrupted(LoadgenError):
    """
    Raised inside a scenario when its iteration has been abandoned.

    The executor sets the interruption flag once a graceful ramp-down or
    graceful stop window has elapsed.  Cancellable waits (``vu.sleep``)
    and HTTP calls raise this so the scenario unwinds without recording
    anything further.
    """
