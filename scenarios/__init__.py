"""
Load-test scenarios for the FX subscription service.

Each module exposes a ``user_scenario(vu)`` function referenced from a
run file's ``exec`` key, and a ``METRICS`` mapping declaring the custom
metrics it records.  Ready-to-run YAML files live next to the modules.
"""
