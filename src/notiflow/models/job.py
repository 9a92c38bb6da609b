"""Delivery job: the transient unit of work carried on the queue.

Wire format (JSON message body)::

    {"type": "notification", "data": {...}, "timestamp": 1700000000000, "retries": 0}

``data`` always carries ``notificationId``; everything else in it is
channel-specific (``to``, ``subject``, ``message``, ``username``,
``verificationLink``, ``callbackUrl``, ``userId``).
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import UUID

from notiflow.core.errors import NotifyError


def _now_millis() -> int:
    return int(time.time() * 1000)


def check_notification_id(value: Any) -> str:
    """Return *value* as a canonical UUID string.

    Raises :class:`NotifyError` (validation) for anything the store's
    UUID key column would reject.
    """
    if not value:
        msg = "Job payload is missing data.notificationId"
        raise NotifyError.validation(msg, field="notificationId")
    try:
        return str(UUID(str(value)))
    except ValueError:
        msg = f"Job notificationId is not a valid UUID: {value!r}"
        raise NotifyError.validation(msg, field="notificationId") from None


@dataclass(frozen=True)
class Job:
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=_now_millis)
    retries: int = 0

    # -- accessors ---------------------------------------------------------

    @property
    def notification_id(self) -> str:
        return str(self.data["notificationId"])

    @property
    def callback_url(self) -> str | None:
        return self.data.get("callbackUrl") or None

    @property
    def recipient(self) -> str | None:
        # Older producers sent the address as ``email``.
        return self.data.get("to") or self.data.get("email")

    def next_attempt(self) -> Job:
        """Return a copy with the retry counter incremented."""
        return replace(self, retries=self.retries + 1)

    # -- wire format -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
            "retries": self.retries,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), default=str).encode("utf-8")

    @classmethod
    def from_bytes(cls, body: bytes) -> Job:
        """Parse a message body.

        Raises :class:`NotifyError` (validation) when the body is not
        JSON, is not an object, or lacks a UUID ``data.notificationId``.
        """
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, ValueError) as exc:
            msg = f"Malformed job payload: {exc}"
            raise NotifyError.validation(msg) from exc

        if not isinstance(payload, dict):
            msg = "Job payload must be a JSON object"
            raise NotifyError.validation(msg)

        data = payload.get("data")
        if not isinstance(data, dict):
            msg = "Job payload is missing data.notificationId"
            raise NotifyError.validation(msg)
        check_notification_id(data.get("notificationId"))

        retries = payload.get("retries") or 0
        if not isinstance(retries, int) or isinstance(retries, bool) or retries < 0:
            msg = f"Job retries must be a non-negative integer (got {retries!r})"
            raise NotifyError.validation(msg)

        timestamp = payload.get("timestamp")
        return cls(
            type=str(payload.get("type", "")),
            data=data,
            timestamp=timestamp if isinstance(timestamp, int) else _now_millis(),
            retries=retries,
        )
