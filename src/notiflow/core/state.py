"""Notification delivery state machine.

Defines the valid status transitions for a notification record.  The
worker only ever moves a record along these edges; SENT and FAILED are
terminal.

Usage::

    from notiflow.core.state import assert_transition
    from notiflow.core.types import NotificationStatus

    assert_transition(NotificationStatus.QUEUED, NotificationStatus.SENDING)
"""

from __future__ import annotations

import logging

from notiflow.core.types import NotificationStatus

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# queued → sending (claim), sending → sent/retrying/failed,
# retrying → sending (re-claim after the retry delay).
# ---------------------------------------------------------------------------

NOTIFICATION_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    NotificationStatus.QUEUED: frozenset({NotificationStatus.SENDING}),
    NotificationStatus.SENDING: frozenset(
        {
            NotificationStatus.SENT,
            NotificationStatus.RETRYING,
            NotificationStatus.FAILED,
        }
    ),
    NotificationStatus.RETRYING: frozenset({NotificationStatus.SENDING}),
    NotificationStatus.SENT: frozenset(),
    NotificationStatus.FAILED: frozenset(),
}

# Statuses from which a worker may claim a notification.
CLAIMABLE_STATUSES: frozenset[NotificationStatus] = frozenset(
    s for s, targets in NOTIFICATION_TRANSITIONS.items() if NotificationStatus.SENDING in targets
)

TERMINAL_STATUSES: frozenset[NotificationStatus] = frozenset(
    s for s, targets in NOTIFICATION_TRANSITIONS.items() if not targets
)


def assert_transition(
    current: NotificationStatus,
    target: NotificationStatus,
    table: dict | None = None,
) -> None:
    """Raise :class:`ValueError` if *current* → *target* is not allowed.

    Parameters
    ----------
    current:
        The current status of the notification.
    target:
        The desired new status.
    table:
        Transition table, defaults to :data:`NOTIFICATION_TRANSITIONS`.

    """
    allowed = (table or NOTIFICATION_TRANSITIONS).get(current)
    if allowed is None:
        msg = f"Unknown status {current!r}"
        raise ValueError(msg)
    if target not in allowed:
        msg = (
            f"Invalid transition {current.name} -> {target.name}; "
            f"allowed targets: {sorted(s.name for s in allowed) or '(terminal)'}"
        )
        raise ValueError(msg)


def log_transition(
    notification_id,
    from_status,
    to_status,
    *,
    reason: str | None = None,
) -> None:
    """Emit a structured log entry for a status transition."""
    extra = {
        "event": "state_transition",
        "resource_id": str(notification_id),
        "from_status": from_status.name if hasattr(from_status, "name") else str(from_status),
        "to_status": to_status.name if hasattr(to_status, "name") else str(to_status),
    }
    if reason:
        extra["reason"] = reason
    log.info(
        "notification %s: %s -> %s%s",
        notification_id,
        extra["from_status"],
        extra["to_status"],
        f" ({reason})" if reason else "",
        extra=extra,
    )
