"""Ledgerwatch process entry-point.

Usage:
    python -m ledgerwatch [--once] [--env-file PATH] [--log-level LEVEL] [--log-format FORMAT]

The orchestration logic lives in ``ledgerwatch.orchestrator``.  This module
loads settings, calls ``configure_logging()`` with the portal credentials
registered for redaction, wires the Playwright collaborators into a
:class:`~ledgerwatch.orchestrator.engine.CheckEngine` and hands off to a
runner.

Default behaviour (no ``--once``) is continuous: the engine runs one cycle
per configured interval until ``SIGTERM``/``SIGINT`` or a fatal failure.
Pass ``--once`` to execute a single cycle and exit.

Exit codes: ``0`` success, ``1`` configuration error or failed ``--once``
cycle, otherwise the exit code of a fatal recovery action.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from ledgerwatch.core import configure_logging
from ledgerwatch.core.exceptions import ConfigError
from ledgerwatch.core.settings import Settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledgerwatch",
        description="Periodic account-statement checker with webhook delivery.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single check cycle and exit instead of running on the interval.",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        metavar="PATH",
        help="Settings file to read in addition to the environment (default: .env).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT (text|json).",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry-point registered in ``pyproject.toml``.  Returns the exit code."""
    args = _build_parser().parse_args(argv)

    try:
        settings = Settings(_env_file=args.env_file)
    except ValidationError as exc:
        # Logging is not configured yet and may itself depend on settings.
        print(f"ledgerwatch: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        return 1

    try:
        configure_logging(
            level=args.log_level or settings.log_level,
            fmt=args.log_format or settings.log_format,
            secrets=settings.secret_values,
        )
    except ValueError as exc:
        print(f"ledgerwatch: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        return 1

    logger = logging.getLogger(__name__)
    logger.info("Ledgerwatch starting up")

    # Lazy import keeps startup fast when the module is imported without running.
    from ledgerwatch.orchestrator.engine import CheckEngine, PortalCollaborators  # noqa: PLC0415
    from ledgerwatch.orchestrator.runner import run_continuous, run_once  # noqa: PLC0415

    if not settings.credentials_configured:
        logger.critical("Configuration error: PORTAL_USERNAME and PORTAL_PASSWORD must be set.")
        return 1
    if not settings.delivery_configured:
        logger.warning("DELIVERY_URL is not set; parsed mutations will only be logged.")

    try:
        engine = CheckEngine(settings, PortalCollaborators.playwright(settings))
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        return 1

    try:
        if args.once:
            logger.info("Running a single check cycle (--once).")
            return asyncio.run(run_once(engine))
        logger.info("Running continuously (SIGTERM or Ctrl+C to stop).")
        return asyncio.run(run_continuous(engine))
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
