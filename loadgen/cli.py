"""
Command-line entry point.

Usage::

    loadgen scenarios/subscription_flow.yml
    loadgen scenarios/api_load.yml --base-url https://staging:8443/api/v1 \\
        --summary-export results/summary.json

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "harness crashed":

- ``0`` -- all thresholds passed
- ``1`` -- at least one threshold failed or had no data
- ``2`` -- configuration or harness error (bad YAML, unknown executor,
  unimportable scenario ...)
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from loadgen.config import environment_settings
from loadgen.exceptions import ConfigurationError, LoadgenError
from loadgen.options import load_run_options
from loadgen.runner import EXIT_ERROR, LoadTestRunner
from loadgen.summary import export_summary, print_summary

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for a load-test run."""
    parser = argparse.ArgumentParser(
        prog="loadgen",
        description="Run a load test described by a YAML run file and gate on its thresholds.",
    )
    parser.add_argument("config", type=Path, help="Path to the run configuration YAML file")
    parser.add_argument("--base-url", help="Override the target base URL (else TARGET_BASE_URL / config)")
    parser.add_argument(
        "--insecure",
        action="store_true",
        default=None,
        help="Skip TLS certificate verification (test environments only)",
    )
    parser.add_argument("--summary-export", type=Path, help="Write the end-of-test summary as JSON")
    parser.add_argument("--log-level", help="Logging level (default: LOG_LEVEL or the environment profile)")
    parser.add_argument("--env", help="Configuration profile: development, testing or production")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def main(argv: list[str] | None = None) -> int:
    """
    Entry point: load options, run, print the summary, map to an exit code.

    Returns:
        ``0`` if all thresholds pass, ``1`` if any fails, ``2`` on
        configuration or harness errors.
    """
    args = parse_args(argv)

    try:
        settings = environment_settings(args.env)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    configure_logging(args.log_level or settings["log_level"])

    try:
        options = load_run_options(args.config, env=args.env)
        overrides = {}
        if args.base_url:
            overrides["base_url"] = args.base_url
        if args.insecure:
            overrides["insecure_skip_tls_verify"] = True
        if overrides:
            options = options.with_overrides(**overrides)

        result = LoadTestRunner(options).run()
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_ERROR
    except LoadgenError as exc:
        logger.error("Run failed: %s", exc)
        return EXIT_ERROR

    print_summary(result, options.summary_trend_stats)
    if args.summary_export:
        try:
            export_summary(result, options.summary_trend_stats, args.summary_export)
        except OSError as exc:
            logger.error("Could not write summary to %s: %s", args.summary_export, exc)
            return EXIT_ERROR
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
