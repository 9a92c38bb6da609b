"""Enumerated types shared by the store, the producer and the worker.

:class:`NotificationStatus` is an :class:`enum.IntEnum` because the
status ids are persisted as integers and are part of the external
contract (``QUEUED=1`` .. ``RETRYING=5``).  The remaining enums are
``StrEnum`` so their ``.value`` serialises naturally to JSON and TEXT.
"""

from __future__ import annotations

from enum import IntEnum, StrEnum
from uuid import UUID

# Owner of system-generated notifications that have no user.
ANONYMOUS_USER_ID = UUID("00000000-0000-0000-0000-000000000000")


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------


class NotificationStatus(IntEnum):
    QUEUED = 1
    SENDING = 2
    SENT = 3
    FAILED = 4
    RETRYING = 5

    @classmethod
    def is_valid(cls, value: object) -> bool:
        """Return True if *value* is one of the known status ids."""
        return value in cls._value2member_map_


class NotificationType(StrEnum):
    EMAIL = "email"
    WEBSOCKET = "websocket"
    PUSH = "push"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobType(StrEnum):
    VERIFICATION = "verification"
    NOTIFICATION = "notification"
