"""Notification store initialisation.

Usage::

    from notiflow.config import get_config
    from notiflow.db.init import init_database

    db = init_database(get_config().settings.database)

The persisted status ids are an external contract shared with every
reader of the ``notifications`` table, so :func:`init_database` checks
the ``notification_statuses`` lookup against :class:`NotificationStatus`
before anything is claimed or written.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pypgkit import Database, DatabaseConfig

from notiflow.core.types import NotificationStatus

if TYPE_CHECKING:
    from notiflow.config.settings import DatabaseSettings

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

log = logging.getLogger(__name__)


class SchemaMismatchError(RuntimeError):
    """The status lookup table disagrees with :class:`NotificationStatus`."""


def _settings_to_config(settings: DatabaseSettings) -> DatabaseConfig:
    return DatabaseConfig(
        host=settings.host,
        port=settings.port,
        database=settings.database,
        user=settings.user,
        password=settings.password,
        sslmode=settings.sslmode,
        min_connections=settings.min_connections,
        max_connections=settings.max_connections,
        connection_timeout=settings.connection_timeout,
    )


def verify_status_table(db: Database) -> None:
    """Raise :class:`SchemaMismatchError` unless ids 1..5 map to the known names."""
    rows = db.fetch_all(
        "SELECT id, name FROM notification_statuses ORDER BY id",
        as_dict=True,
    )
    found = {int(r["id"]): str(r["name"]).lower() for r in rows}
    expected = {s.value: s.name.lower() for s in NotificationStatus}
    if found != expected:
        missing = sorted(set(expected.items()) - set(found.items()))
        unexpected = sorted(set(found.items()) - set(expected.items()))
        msg = (
            "notification_statuses does not match the status contract "
            f"(missing: {missing or 'none'}, unexpected: {unexpected or 'none'})"
        )
        raise SchemaMismatchError(msg)
    log.debug("Status lookup table verified (%d statuses)", len(found))


def init_database(settings: DatabaseSettings, *, verify: bool = True) -> Database:
    """Initialise the :class:`Database` singleton from config settings.

    If the singleton is already initialised, returns the existing instance
    without re-verifying.  The bundled ``schema.sql`` is applied only when
    ``auto_setup`` is set.
    """
    if Database.is_initialized():
        log.debug("Database already initialised, returning existing instance")
        return Database.get_instance()

    log.info(
        "Initialising notification store: %s@%s:%s/%s",
        settings.user,
        settings.host,
        settings.port,
        settings.database,
        extra={"auto_setup": settings.auto_setup},
    )

    db = Database.init(
        config=_settings_to_config(settings),
        schema_path=_SCHEMA_PATH if settings.auto_setup else None,
        auto_setup=settings.auto_setup,
        interactive=False,
    )

    if verify:
        verify_status_table(db)

    log.info("Notification store ready")
    return db
