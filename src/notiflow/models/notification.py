"""Notification entity."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from notiflow.core.types import ANONYMOUS_USER_ID, NotificationStatus

if TYPE_CHECKING:
    from uuid import UUID

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class Notification:
    id: UUID
    type: str
    channel: str
    subject: str
    content: str | None = None
    user_id: UUID = ANONYMOUS_USER_ID
    metadata: dict[str, Any] = field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.QUEUED
    error_message: str | None = None
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH
    sent_at: datetime | None = None

    @property
    def callback_url(self) -> str | None:
        return self.metadata.get("callbackUrl") or None


@dataclass(frozen=True)
class NotificationStats:
    """One ``(type, status, count)`` row of a per-user aggregation."""

    type: str
    status: NotificationStatus
    count: int
