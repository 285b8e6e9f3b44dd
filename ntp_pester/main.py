"""
ntp-pester command line

Runs the test catalog against one NTP (and optionally NTS) server and prints
one line per case followed by a summary:

1. Parses and validates the target configuration
2. Resolves the target and runs the initial NTS-KE when --nts is given
3. Runs every case in order, streaming results
4. Exits 0 when nothing failed or errored, 1 otherwise, 2 on setup errors
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, TextIO

import structlog
from pydantic import ValidationError

from ntp_pester.cases import all_tests
from ntp_pester.config import RunConfig, parse_timeout, settings
from ntp_pester.engine.registry import Registry
from ntp_pester.engine.report import Report, format_entry
from ntp_pester.engine.runner import TestRunner
from ntp_pester.engine.target import prepare_target
from ntp_pester.exceptions import ConfigurationError
from ntp_pester.logging import setup_logging
from ntp_pester.models import OutcomeKind, ReportEntry

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_SETUP_ERROR = 2

COLORS = {
    "reset": "\033[0m",
    "blue": "\033[94m",
    "green": "\033[92m",
    "yellow": "\033[93m",
    "red": "\033[91m",
}

OUTCOME_COLORS = {
    OutcomeKind.PASSED: "green",
    OutcomeKind.FAILED: "red",
    OutcomeKind.ERRORED: "yellow",
    OutcomeKind.SKIPPED: "blue",
}


class ConsoleReporter:
    """Prints report lines as cases finish, colored when writing to a TTY"""

    def __init__(self, stream: Optional[TextIO] = None, color: Optional[bool] = None):
        self.stream = stream or sys.stdout
        self._color_enabled = self.stream.isatty() if color is None else color

    def on_result(self, entry: ReportEntry) -> None:
        status, *details = format_entry(entry)
        self._print(self._colorize(status, OUTCOME_COLORS[entry.outcome.kind]))
        for line in details:
            self._print(line)

    def summary(self, report: Report) -> None:
        self._print("")
        for kind, line in zip(OutcomeKind, report.summary_lines()):
            self._print(self._colorize(line, OUTCOME_COLORS[kind]))

    def _print(self, line: str) -> None:
        print(line, file=self.stream, flush=True)

    def _colorize(self, message: str, color: str) -> str:
        if not self._color_enabled or color not in COLORS:
            return message
        return f"{COLORS[color]}{message}{COLORS['reset']}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ntp-pester",
        description="Conformance and edge-case tests for NTP and NTS servers",
    )
    parser.add_argument(
        "host",
        nargs="?",
        default="localhost",
        help="Target host, optionally host:port or [v6]:port",
    )
    parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help=f"NTP port (default {settings.default_port})",
    )
    parser.add_argument(
        "-t", "--timeout",
        default=f"{settings.default_timeout_ms}ms",
        help="Reply timeout, e.g. 100ms, 1.5s",
    )
    parser.add_argument(
        "-s", "--nts",
        action="store_true",
        help="Run NTS and NTS-KE cases",
    )
    parser.add_argument(
        "--ke-port",
        type=int,
        default=settings.default_ke_port,
        help=f"NTS-KE port (default {settings.default_ke_port})",
    )
    parser.add_argument(
        "-c", "--ca-file",
        type=Path,
        help="PEM file with the trusted root for NTS-KE (requires --nts)",
    )
    parser.add_argument(
        "--case-timeout",
        type=float,
        default=settings.case_timeout_sec,
        help="Upper bound in seconds for a single test case",
    )
    parser.add_argument(
        "-o", "--only",
        action="append",
        default=[],
        metavar="PREFIX",
        help="Only run cases whose name starts with PREFIX (repeatable)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging on stderr",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Never color the report",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """
    Raises:
        ConfigurationError: If any value fails validation
    """
    if args.ca_file is not None and not args.nts:
        raise ConfigurationError("--ca-file requires --nts")
    try:
        return RunConfig.from_target(
            args.host,
            port=args.port,
            timeout=parse_timeout(args.timeout),
            nts_enabled=args.nts,
            ke_port=args.ke_port,
            ca_file=args.ca_file,
            case_timeout=args.case_timeout,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}", details={"errors": e.errors()})


async def run(
    config: RunConfig,
    registry: Optional[Registry] = None,
    reporter: Optional[ConsoleReporter] = None,
) -> Report:
    """Resolve the target and run registry (all cases by default) against it."""
    registry = registry or all_tests()
    context = await prepare_target(config)
    runner = TestRunner(
        registry,
        context,
        on_result=reporter.on_result if reporter else None,
    )
    report = await runner.run()
    if reporter is not None:
        reporter.summary(report)
    return report


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    setup_logging("pester", level=logging.DEBUG if args.verbose else None)

    try:
        config = config_from_args(args)
        registry = all_tests()
        if args.only:
            registry = registry.select(args.only)
    except ConfigurationError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return EXIT_SETUP_ERROR

    logger.info(
        "run_starting",
        target=config.target,
        port=config.port,
        nts=config.nts_enabled,
        cases=len(registry),
    )
    reporter = ConsoleReporter(color=False if args.no_color else None)
    try:
        report = asyncio.run(run(config, registry, reporter))
    except ConfigurationError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return EXIT_SETUP_ERROR
    except KeyboardInterrupt:
        logger.info("run_interrupted")
        return EXIT_SETUP_ERROR

    return EXIT_OK if report.success else EXIT_FAILURES


if __name__ == "__main__":
    sys.exit(main())
