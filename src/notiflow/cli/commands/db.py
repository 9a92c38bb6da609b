"""Notification store subcommands."""

from __future__ import annotations

import logging
import sys

log = logging.getLogger(__name__)


def run_db(config, args) -> None:
    """Handle db subcommands."""
    if args.db_command == "status":
        _db_status(config)
    elif args.db_command == "pending":
        _db_pending(config, args.limit)
    elif args.db_command == "purge":
        days = args.days if args.days is not None else config.settings.retention.days
        _db_purge(config, days)
    else:
        print("notiflow: error: db requires a subcommand (status, pending, purge)", file=sys.stderr)  # noqa: T201
        sys.exit(1)


def _db_status(config) -> None:
    """Check database connectivity and schema status."""
    from notiflow.db import init_database

    try:
        db = init_database(config.settings.database)
        db.fetch_value("SELECT 1")
        tables = db.fetch_value(
            "SELECT count(*) FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name IN "
            "('notifications', 'notification_statuses')",
        )
    except Exception:
        log.exception("Database status check failed")
        sys.exit(1)

    print(f"database OK ({tables}/2 tables present)")  # noqa: T201
    if tables != 2:
        sys.exit(1)


def _db_pending(config, limit: int) -> None:
    """List notifications still waiting for delivery."""
    from notiflow.db import init_database
    from notiflow.repositories import NotificationRepository

    try:
        db = init_database(config.settings.database)
        pending = NotificationRepository(db).get_pending(limit)
    except Exception:
        log.exception("Failed to list pending notifications")
        sys.exit(1)

    for n in pending:
        print(f"{n.id}  {n.status.name:<8}  {n.created_at.isoformat()}  {n.channel}")  # noqa: T201
    print(f"{len(pending)} pending", file=sys.stderr)  # noqa: T201


def _db_purge(config, days: int) -> None:
    """Delete notifications older than *days*."""
    from notiflow.db import init_database
    from notiflow.repositories import NotificationRepository

    try:
        db = init_database(config.settings.database)
        deleted = NotificationRepository(db).delete_older_than(days)
    except Exception:
        log.exception("Retention purge failed")
        sys.exit(1)

    print(f"deleted {deleted} notifications older than {days} days")  # noqa: T201
