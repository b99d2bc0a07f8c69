"""
Unit tests for the load-test harness.

Everything here runs in-process: no sockets, no sleeping longer than a
few milliseconds.
"""
