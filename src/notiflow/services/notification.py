"""Notification service: record creation, enqueueing and read access.

The entry point for whatever front end accepts notification requests.
Every ``send_*`` call first persists a QUEUED record and then enqueues a
job carrying its id; the call returns only once the broker has
confirmed the job.  If enqueueing fails the record stays QUEUED (see
``notiflow db pending``) and the error propagates to the caller.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit
from uuid import UUID

from notiflow.core.errors import NotifyError
from notiflow.core.types import ANONYMOUS_USER_ID, JobType, NotificationStatus, NotificationType

if TYPE_CHECKING:
    from notiflow.broker.producer import JobProducer
    from notiflow.models.notification import Notification, NotificationStats
    from notiflow.repositories.notification import NotificationRepository

log = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SUBJECT_MAX = 500
_USERNAME_MAX = 255
_DEFAULT_VERIFICATION_SUBJECT = "Verify your email"


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------


def _require(fields: dict[str, Any]) -> None:
    missing = [name for name, value in fields.items() if value is None or value == ""]
    if missing:
        msg = f"Missing required fields: {', '.join(missing)}"
        raise NotifyError.validation(msg, missing=missing)


def _validate_email(value: str, field: str = "email") -> str:
    value = value.strip()
    if not _EMAIL_RE.match(value):
        msg = "Invalid email address format"
        raise NotifyError.validation(msg, field=field, value=value)
    return value


def _validate_url(value: str, field: str = "url") -> str:
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        msg = "Invalid URL format"
        raise NotifyError.validation(msg, field=field, value=value)
    return value


def _validate_length(value: str, limit: int, field: str) -> None:
    if len(value) > limit:
        msg = f"{field} must be at most {limit} characters"
        raise NotifyError.validation(msg, field=field)


def _parse_uuid(value: UUID | str, field: str = "id") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        msg = "Invalid UUID format"
        raise NotifyError.validation(msg, field=field, value=str(value)) from None


class NotificationService:
    """Facade over the notification store and the job producer."""

    def __init__(
        self,
        notification_repo: NotificationRepository,
        producer: JobProducer,
    ) -> None:
        self._notifications = notification_repo
        self._producer = producer

    # -- write side ----------------------------------------------------------

    def create_notification(
        self,
        *,
        type: str,  # noqa: A002
        channel: str,
        subject: str,
        content: str | None = None,
        user_id: UUID | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        """Persist a new QUEUED notification record.

        ``channel`` is the delivery address; for ``email`` notifications
        it must be a well-formed address.
        """
        if type == NotificationType.EMAIL and channel:
            channel = _validate_email(channel, field="channel")
        owner = ANONYMOUS_USER_ID if user_id is None else _parse_uuid(user_id, "userId")
        return self._notifications.create_notification(
            type=type,
            channel=channel,
            subject=subject,
            content=content,
            user_id=owner,
            metadata=metadata or {},
        )

    def _enqueue(
        self,
        job_type: JobType,
        notification: Notification,
        data: dict[str, Any],
    ) -> Notification:
        data["notificationId"] = str(notification.id)
        payload = {k: v for k, v in data.items() if v is not None}
        try:
            self._producer.enqueue(job_type, payload)
        except NotifyError:
            log.error(
                "Notification %s recorded but not enqueued",
                notification.id,
                extra={"job_type": job_type.value},
            )
            raise
        return notification

    def send_verification(
        self,
        email: str,
        username: str,
        verification_link: str,
        *,
        user_id: UUID | str | None = None,
        callback_url: str | None = None,
        subject: str | None = None,
    ) -> Notification:
        """Record and enqueue a verification email."""
        _require({"email": email, "username": username, "verificationLink": verification_link})
        email = _validate_email(email)
        _validate_length(username, _USERNAME_MAX, "username")
        _validate_url(verification_link, "verificationLink")
        if callback_url:
            _validate_url(callback_url, "callbackUrl")
        if subject:
            _validate_length(subject, _SUBJECT_MAX, "subject")

        metadata: dict[str, Any] = {"jobType": JobType.VERIFICATION.value}
        if callback_url:
            metadata["callbackUrl"] = callback_url

        notification = self.create_notification(
            type=NotificationType.EMAIL.value,
            channel=email,
            subject=subject or _DEFAULT_VERIFICATION_SUBJECT,
            content=verification_link,
            user_id=user_id,
            metadata=metadata,
        )
        return self._enqueue(
            JobType.VERIFICATION,
            notification,
            {
                "to": email,
                "username": username,
                "verificationLink": verification_link,
                "subject": subject,
                "userId": str(notification.user_id),
                "callbackUrl": callback_url,
            },
        )

    def send_notification(
        self,
        email: str,
        subject: str,
        message: str,
        *,
        user_id: UUID | str | None = None,
        callback_url: str | None = None,
    ) -> Notification:
        """Record and enqueue a plain notification email."""
        _require({"email": email, "subject": subject, "message": message})
        email = _validate_email(email)
        _validate_length(subject, _SUBJECT_MAX, "subject")
        if callback_url:
            _validate_url(callback_url, "callbackUrl")

        metadata: dict[str, Any] = {"jobType": JobType.NOTIFICATION.value}
        if callback_url:
            metadata["callbackUrl"] = callback_url

        notification = self.create_notification(
            type=NotificationType.EMAIL.value,
            channel=email,
            subject=subject,
            content=message,
            user_id=user_id,
            metadata=metadata,
        )
        return self._enqueue(
            JobType.NOTIFICATION,
            notification,
            {
                "to": email,
                "subject": subject,
                "message": message,
                "userId": str(notification.user_id),
                "callbackUrl": callback_url,
            },
        )

    def update_status(
        self,
        notification_id: UUID | str,
        status: int,
        error_message: str | None = None,
    ) -> bool:
        if not NotificationStatus.is_valid(status):
            raise NotifyError.not_found("Status", status)
        return self._notifications.update_status(
            notification_id,
            NotificationStatus(status),
            error_message,
        )

    # -- read side -----------------------------------------------------------

    def get_by_id(
        self,
        notification_id: UUID | str,
        user_id: UUID | str | None = None,
    ) -> Notification:
        """Fetch a notification, optionally enforcing ownership.

        Raises
        ------
        NotifyError
            ``VALIDATION`` for a missing id, ``NOT_FOUND`` if there is no
            such record, ``FORBIDDEN`` if *user_id* does not own it.

        """
        if not notification_id:
            msg = "Notification ID is required"
            raise NotifyError.validation(msg)

        notification = self._notifications.get_by_id(_parse_uuid(notification_id))
        if notification is None:
            raise NotifyError.not_found("Notification", notification_id)

        if user_id and notification.user_id != _parse_uuid(user_id, "userId"):
            raise NotifyError.forbidden()

        return notification

    def get_by_user_id(
        self,
        user_id: UUID | str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        if not user_id:
            msg = "User ID is required"
            raise NotifyError.validation(msg)
        return self._notifications.get_by_user_id(_parse_uuid(user_id, "userId"), limit, offset)

    def get_stats_by_user_id(self, user_id: UUID | str) -> list[NotificationStats]:
        if not user_id:
            msg = "User ID is required"
            raise NotifyError.validation(msg)
        return self._notifications.get_stats_by_user_id(_parse_uuid(user_id, "userId")) or []
