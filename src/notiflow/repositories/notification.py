"""Notification repository: the durable record and its status-claim protocol."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from psycopg.types.json import Jsonb
from pypgkit import BaseRepository, Database

from notiflow.core.state import CLAIMABLE_STATUSES
from notiflow.core.types import ANONYMOUS_USER_ID, NotificationStatus
from notiflow.models.notification import Notification, NotificationStats

if TYPE_CHECKING:
    from uuid import UUID

log = logging.getLogger(__name__)


class NotificationRepository(BaseRepository[Notification]):
    table_name = "notifications"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row.get("user_id") or ANONYMOUS_USER_ID,
            type=row["type"],
            channel=row["channel"],
            subject=row["subject"],
            content=row.get("content"),
            metadata=row.get("metadata") or {},
            status=NotificationStatus(row["status_id"]),
            error_message=row.get("error_message"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            sent_at=row.get("sent_at"),
        )

    def _entity_to_row(self, entity: Notification) -> dict:
        return {
            "id": entity.id,
            "user_id": entity.user_id,
            "type": entity.type,
            "channel": entity.channel,
            "subject": entity.subject,
            "content": entity.content,
            "metadata": Jsonb(entity.metadata),
            "status_id": entity.status.value,
            "error_message": entity.error_message,
        }

    def create_notification(
        self,
        *,
        type: str,  # noqa: A002
        channel: str,
        subject: str,
        content: str | None = None,
        user_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        """Insert a new QUEUED record and return it with id and timestamps."""
        entity = Notification(
            id=uuid4(),
            user_id=user_id or ANONYMOUS_USER_ID,
            type=type,
            channel=channel,
            subject=subject,
            content=content,
            metadata=dict(metadata or {}),
            status=NotificationStatus.QUEUED,
        )
        created = self.create(entity)
        log.info(
            "Notification record created",
            extra={"notification_id": str(created.id), "type": type},
        )
        return created

    def update_status(
        self,
        notification_id: UUID | str,
        status: NotificationStatus,
        error_message: str | None = None,
    ) -> bool:
        """Transition a notification to *status*.

        ``SENDING`` is a conditional claim: the row only changes if it is
        currently QUEUED or RETRYING, so exactly one concurrent caller
        observes ``True``.  Every other target is written unconditionally.
        ``FAILED`` records *error_message*; any other status clears it, and
        ``SENT`` stamps ``sent_at``.

        Returns True if a row was changed.
        """
        db = Database.get_instance()
        status = NotificationStatus(status)

        if status is NotificationStatus.SENDING:
            claimable = sorted(s.value for s in CLAIMABLE_STATUSES)
            changed = db.execute(
                "UPDATE notifications "
                "SET status_id = %s, error_message = NULL, updated_at = now() "
                "WHERE id = %s AND status_id = ANY(%s)",
                (status.value, notification_id, claimable),
            )
        elif status is NotificationStatus.FAILED:
            changed = db.execute(
                "UPDATE notifications "
                "SET status_id = %s, error_message = %s, updated_at = now() "
                "WHERE id = %s",
                (status.value, error_message, notification_id),
            )
        elif status is NotificationStatus.SENT:
            changed = db.execute(
                "UPDATE notifications "
                "SET status_id = %s, error_message = NULL, "
                "    sent_at = now(), updated_at = now() "
                "WHERE id = %s",
                (status.value, notification_id),
            )
        else:
            changed = db.execute(
                "UPDATE notifications "
                "SET status_id = %s, error_message = NULL, updated_at = now() "
                "WHERE id = %s",
                (status.value, notification_id),
            )

        log.debug(
            "Notification status update %s -> %s (changed=%s)",
            notification_id,
            status.name,
            changed,
        )
        return changed > 0

    def get_by_id(self, notification_id: UUID | str) -> Notification | None:
        return self.find_by_id(notification_id)

    def get_by_user_id(
        self,
        user_id: UUID | str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        """Return a user's notifications, newest first."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT * FROM notifications "
            "WHERE user_id = %s "
            "ORDER BY created_at DESC "
            "LIMIT %s OFFSET %s",
            (user_id, limit, offset),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

    def get_stats_by_user_id(self, user_id: UUID | str) -> list[NotificationStats]:
        """Count a user's notifications grouped by type and status."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT type, status_id, COUNT(*) AS count "
            "FROM notifications "
            "WHERE user_id = %s "
            "GROUP BY type, status_id "
            "ORDER BY type, status_id",
            (user_id,),
            as_dict=True,
        )
        return [
            NotificationStats(
                type=r["type"],
                status=NotificationStatus(r["status_id"]),
                count=int(r["count"]),
            )
            for r in rows
        ]

    def get_pending(self, limit: int = 100) -> list[Notification]:
        """Return QUEUED or RETRYING notifications, oldest first."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT * FROM notifications "
            "WHERE status_id = ANY(%s) "
            "ORDER BY created_at ASC "
            "LIMIT %s",
            (sorted(s.value for s in CLAIMABLE_STATUSES), limit),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

    def delete_older_than(self, days: int = 90) -> int:
        """Delete notifications created more than *days* ago. Returns count deleted."""
        db = Database.get_instance()
        deleted = db.execute(
            "DELETE FROM notifications WHERE created_at < now() - make_interval(days => %s)",
            (days,),
        )
        log.info("Old notifications deleted", extra={"days": days, "deleted": deleted})
        return deleted
