"""Best-effort delivery-outcome webhooks.

The caller of the enqueue API may supply a ``callbackUrl``; after every
outcome the worker decides (sent, retrying, failed) the record's current
status is POSTed there as JSON::

    {"notificationId": "...", "status": "SENT",
     "timestamp": "2024-01-01T00:00:00+00:00", "errorMessage": null}

Nothing here ever raises: callback failures are logged and never touch
the ack/nack decision already made for the job.
"""

from __future__ import annotations

import contextlib
import json
import logging
import urllib.error
import urllib.request
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from notiflow.core.errors import NotifyError
from notiflow.core.types import NotificationStatus

if TYPE_CHECKING:
    from notiflow.config.settings import CallbackSettings
    from notiflow.models.job import Job
    from notiflow.models.notification import Notification
    from notiflow.repositories.notification import NotificationRepository

log = logging.getLogger(__name__)

_ALLOWED_SCHEMES = frozenset({"http", "https"})


def build_payload(notification: Notification) -> dict[str, Any]:
    """Callback body for a notification record as currently stored."""
    return {
        "notificationId": str(notification.id),
        "status": notification.status.name,
        "timestamp": notification.updated_at.isoformat(),
        "errorMessage": notification.error_message,
    }


def fallback_payload(job: Job, error_message: str | None = None) -> dict[str, Any]:
    """Minimal callback body built from the job alone.

    The record could not be reported as stored, so the status is always
    ``FAILED`` with the last known error.
    """
    return {
        "notificationId": job.notification_id,
        "status": NotificationStatus.FAILED.name,
        "timestamp": datetime.now(UTC).isoformat(),
        "errorMessage": error_message,
    }


class CallbackNotifier:
    """POSTs delivery outcomes to caller-supplied URLs."""

    def __init__(
        self,
        settings: CallbackSettings,
        notifications: NotificationRepository,
    ) -> None:
        self._settings = settings
        self._notifications = notifications

    def post(self, url: str, payload: dict[str, Any]) -> int:
        """POST *payload* to *url*; returns the HTTP status.

        Raises on transport errors and non-2xx responses.
        """
        if urlsplit(url).scheme not in _ALLOWED_SCHEMES:
            msg = f"Callback URL must be http or https: {url}"
            raise NotifyError.validation(msg, field="callbackUrl")

        req = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "User-Agent": self._settings.user_agent,
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self._settings.timeout_seconds) as resp:
                status = resp.status
        except urllib.error.HTTPError as exc:
            body = ""
            with contextlib.suppress(Exception):
                body = exc.read().decode("utf-8", errors="replace")[:200]
            log.warning("Callback %s returned HTTP %d: %s", url, exc.code, body)
            raise

        log.info(
            "Callback executed successfully",
            extra={"url": url, "status_code": status},
        )
        return status

    def notify(
        self,
        job: Job,
        status: NotificationStatus,
        error_message: str | None = None,
    ) -> bool:
        """Report the outcome for *job*; returns True if a POST succeeded.

        *status* is the outcome the worker just recorded and is only
        logged.  *error_message* is the last known error carried by the
        fallback payload when the record cannot be re-read or the first
        POST fails.
        """
        url = job.callback_url
        if not url or not self._settings.enabled:
            return False

        try:
            notification = self._notifications.get_by_id(job.notification_id)
            if notification is None:
                raise NotifyError.not_found("Notification", job.notification_id)
            self.post(url, build_payload(notification))
        except Exception as exc:  # noqa: BLE001
            log.warning(
                "Callback to %s failed (%s), retrying with fallback payload",
                url,
                exc,
                extra={"outcome": status.name},
            )
        else:
            return True

        try:
            self.post(url, fallback_payload(job, error_message))
        except Exception:
            log.exception("Fallback callback to %s failed, giving up", url)
            return False
        return True
