"""notiflow command-line entry point.

Usage::

    notiflow -c /etc/notiflow/config.yaml
    notiflow -c config.yaml --validate-only
    notiflow -c config.yaml worker
    notiflow -c config.yaml topology
    notiflow -c config.yaml stats
    notiflow -c config.yaml db status
    notiflow -c config.yaml db pending --limit 20
    notiflow -c config.yaml db purge --days 30
    python -m notiflow -c config.yaml
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

log = logging.getLogger(__name__)


def _get_version() -> str:
    from notiflow import __version__

    return __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notiflow",
        description="notiflow: durable notification delivery worker",
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        metavar="PATH",
        help="Path to the configuration file (YAML or JSON).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug output (full tracebacks, verbose logging).",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        default=False,
        help="Validate the configuration file and exit.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )

    # Subcommands
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("worker", help="Run the delivery worker (default)")
    subparsers.add_parser("topology", help="Declare the queue topology and exit")
    subparsers.add_parser("stats", help="Show main queue statistics")

    # db
    db_parser = subparsers.add_parser("db", help="Notification store management")
    db_sub = db_parser.add_subparsers(dest="db_command")
    db_sub.add_parser("status", help="Check database connectivity")
    pending = db_sub.add_parser("pending", help="List queued and retrying notifications")
    pending.add_argument("--limit", type=int, default=100, help="Maximum rows (default 100)")
    purge = db_sub.add_parser("purge", help="Delete notifications older than the retention window")
    purge.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention in days (default: retention.days from config)",
    )

    return parser


def _print_error(message: str) -> None:
    """Print a user-facing error to stderr."""
    print(f"notiflow: error: {message}", file=sys.stderr)  # noqa: T201


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.  Parses arguments, loads config, dispatches."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    # -- resolve config path ---
    config_path = Path(args.config)
    if not config_path.is_file():
        _print_error(f"configuration file not found: {config_path}")
        sys.exit(1)

    # -- bootstrap logging early (basic stderr until config is loaded) ---
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    # -- load & validate config ---
    try:
        from notiflow.config import ConfigValidationError, NotiflowConfig

        config = NotiflowConfig(
            config_file=str(config_path),
            schema_file="bundled",
        )
    except ConfigValidationError as exc:
        _print_error(str(exc))
        sys.exit(1)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(f"failed to load configuration: {exc}")
        sys.exit(1)

    # -- replace bootstrap logging with structured logging ---
    from notiflow.logging import configure_logging

    configure_logging(config.settings.logging)
    if args.debug:
        logging.getLogger("notiflow").setLevel(logging.DEBUG)

    if args.validate_only:
        _print_settings_summary(config)
        sys.exit(0)

    # -- dispatch subcommand ---
    command = args.command

    if command == "db":
        from notiflow.cli.commands.db import run_db

        run_db(config, args)
    elif command == "topology":
        from notiflow.cli.commands.broker import run_topology

        run_topology(config, args)
    elif command == "stats":
        from notiflow.cli.commands.broker import run_stats

        run_stats(config, args)
    else:
        # No subcommand = worker
        _print_settings_summary(config)
        from notiflow.cli.commands.worker import run_worker

        run_worker(config, args)


def _print_settings_summary(config) -> None:
    """Print a short summary of the loaded configuration."""
    s = config.settings
    lines = [
        f"notiflow {_get_version()}",
        f"  queue:       {s.queues.main} (retry: {s.queues.retry}.1-{s.delivery.max_retries}, dlq: {s.queues.dead_letter})",
        f"  max retries: {s.delivery.max_retries}",
        f"  smtp:        {'enabled' if s.smtp.enabled else 'disabled'}"
        + (f" ({s.smtp.host}:{s.smtp.port})" if s.smtp.enabled else ""),
        f"  callbacks:   {'enabled' if s.callback.enabled else 'disabled'}",
        f"  database:    {s.database.user}@{s.database.host}:{s.database.port}/{s.database.database}",
    ]
    print("\n".join(lines), file=sys.stderr)  # noqa: T201
