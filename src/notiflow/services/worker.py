"""Delivery worker: consumes jobs and drives each notification to an outcome.

Per message, strictly in order:

1. parse the job; malformed payloads are acked and dropped
2. claim the record (QUEUED/RETRYING -> SENDING); a lost claim is acked
   and dropped without touching the delivery channel
3. deliver through the channel for the job type
4. success: record SENT, fire the callback, ack
5. failure: retriable with attempts left -> record RETRYING, publish the
   next attempt to the retry queue, ack; otherwise record FAILED and
   nack without requeue so the broker dead-letters it.  The callback
   fires after the ack/nack.

Runs as a daemon thread with at most ``prefetch_count`` (normally one)
unacknowledged delivery at a time.  Scale out by running more worker
processes; the conditional claim keeps them from delivering the same
notification twice.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from enum import StrEnum
from typing import TYPE_CHECKING

from pika.exceptions import AMQPError

from notiflow.core.errors import NotifyError, is_retriable
from notiflow.core.state import assert_transition, log_transition
from notiflow.core.types import JobType, NotificationStatus
from notiflow.logging import job_context
from notiflow.models.job import Job

if TYPE_CHECKING:
    from pika.adapters.blocking_connection import BlockingChannel

    from notiflow.broker.connection import BrokerConnection
    from notiflow.broker.producer import JobProducer
    from notiflow.config.settings import DeliverySettings, QueueSettings
    from notiflow.delivery.smtp import SmtpChannel
    from notiflow.notifications.renderer import TemplateRenderer
    from notiflow.repositories.notification import NotificationRepository
    from notiflow.services.callback import CallbackNotifier

log = logging.getLogger(__name__)


class Outcome(StrEnum):
    """What happened to one consumed message."""

    MALFORMED = "malformed"  # acked, dropped
    STALE = "stale"  # acked, claim lost
    SENT = "sent"  # acked
    RETRYING = "retrying"  # acked, next attempt on the retry queue
    FAILED = "failed"  # nacked to the dead-letter queue
    DEAD_LETTERED = "dead_lettered"  # nacked after a bookkeeping error
    REQUEUED = "requeued"  # nacked back onto the main queue


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, NotifyError):
        return exc.message
    return str(exc) or exc.__class__.__name__


class DeliveryWorker:
    """Consumes the main queue and delivers notifications.

    Parameters
    ----------
    connection:
        Connection manager owned by this worker; only the worker thread
        touches it.
    producer:
        Producer bound to *connection*, used for retry publishes.
    notifications:
        Notification store.
    channel:
        Outbound delivery channel.
    renderer:
        Template renderer for verification emails.
    notifier:
        Callback notifier.
    queues, delivery:
        Queue names and retry policy.

    """

    def __init__(
        self,
        connection: BrokerConnection,
        producer: JobProducer,
        notifications: NotificationRepository,
        channel: SmtpChannel,
        renderer: TemplateRenderer,
        notifier: CallbackNotifier,
        queues: QueueSettings,
        delivery: DeliverySettings,
    ) -> None:
        self._connection = connection
        self._producer = producer
        self._notifications = notifications
        self._channel = channel
        self._renderer = renderer
        self._notifier = notifier
        self._queues = queues
        self._delivery = delivery
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._consecutive_failures = 0

    # -- lifecycle ---------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the consume loop on a background thread."""
        if self.is_running:
            log.info("Delivery worker is already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="delivery-worker",
            daemon=True,
        )
        self._thread.start()
        log.info(
            "Delivery worker started (queue=%s, prefetch=%d, max_retries=%d)",
            self._queues.main,
            self._delivery.prefetch_count,
            self._delivery.max_retries,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Signal the worker to stop and wait for the in-flight job."""
        self._stop_event.set()
        if self._thread is not None:
            if timeout is None:
                timeout = self._delivery.poll_seconds + 30
            self._thread.join(timeout=timeout)
            log.info("Delivery worker stopped")

    def wait(self) -> None:
        """Block until the worker thread exits."""
        while self.is_running:
            self._thread.join(timeout=1.0)  # type: ignore[union-attr]

    def _run(self) -> None:
        """Main loop: consume until stopped, reconnecting on broker failures."""
        try:
            while not self._stop_event.is_set():
                try:
                    self._consume()
                except Exception:
                    self._consecutive_failures += 1
                    log.exception(
                        "Delivery worker consume error (consecutive failures: %d)",
                        self._consecutive_failures,
                    )
                    self._connection.invalidate()
                    # Exponential backoff: 2^failures, capped
                    backoff = min(
                        2**self._consecutive_failures,
                        self._delivery.reconnect_max_delay_seconds,
                    )
                    self._stop_event.wait(timeout=backoff)
        finally:
            self._connection.close()

    def _consume(self) -> None:
        channel = self._connection.consume_channel(self._delivery.prefetch_count)
        log.info("Consuming from %s", self._queues.main)
        try:
            for method, _properties, body in channel.consume(
                self._queues.main,
                inactivity_timeout=self._delivery.poll_seconds,
            ):
                if method is None:
                    if self._stop_event.is_set():
                        break
                    continue
                self.process_message(channel, method.delivery_tag, body)
                self._consecutive_failures = 0
                if self._stop_event.is_set():
                    break
        finally:
            if channel.is_open:
                with contextlib.suppress(AMQPError):
                    channel.cancel()

    # -- per-message state machine ----------------------------------------

    def process_message(
        self,
        channel: BlockingChannel,
        delivery_tag: int,
        body: bytes,
    ) -> Outcome:
        """Process one delivery and ack or nack it exactly once."""
        try:
            job = Job.from_bytes(body)
        except NotifyError as exc:
            log.error("Dropping malformed job: %s", exc.message)
            channel.basic_ack(delivery_tag=delivery_tag)
            return Outcome.MALFORMED

        with job_context(job.notification_id, job.type, job.retries):
            return self._process_job(channel, delivery_tag, job)

    def _process_job(self, channel: BlockingChannel, delivery_tag: int, job: Job) -> Outcome:
        started = time.monotonic()
        log.info("Processing job", extra={"job_timestamp": job.timestamp})

        try:
            claimed = self._notifications.update_status(
                job.notification_id,
                NotificationStatus.SENDING,
            )
        except Exception:
            log.exception("Failed to claim notification, requeueing job")
            return self._requeue(channel, delivery_tag)

        if not claimed:
            log.info("Notification already claimed or finished, dropping stale job")
            channel.basic_ack(delivery_tag=delivery_tag)
            return Outcome.STALE

        log_transition(
            job.notification_id,
            NotificationStatus.RETRYING if job.retries else NotificationStatus.QUEUED,
            NotificationStatus.SENDING,
            reason="claimed",
        )

        try:
            self._deliver(job)
        except Exception as exc:  # noqa: BLE001
            return self._handle_failure(channel, delivery_tag, job, exc)

        if not self._record(job, NotificationStatus.SENT):
            channel.basic_nack(delivery_tag=delivery_tag, requeue=False)
            return Outcome.DEAD_LETTERED

        self._notifier.notify(job, NotificationStatus.SENT)
        channel.basic_ack(delivery_tag=delivery_tag)
        log.info(
            "Job processed successfully",
            extra={"duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return Outcome.SENT

    def _deliver(self, job: Job) -> None:
        data = job.data
        if job.type == JobType.VERIFICATION:
            subject, html = self._renderer.render(
                "verification",
                {
                    "username": data.get("username", ""),
                    "verification_link": data.get("verificationLink", ""),
                },
            )
            self._channel.send(job.recipient, data.get("subject") or subject, html)
        elif job.type == JobType.NOTIFICATION:
            message = data.get("message", "")
            html = self._renderer.render_body("notification", {"message": message})
            self._channel.send(job.recipient, data.get("subject", ""), html, text=message)
        else:
            msg = f"Unknown job type: {job.type}"
            raise NotifyError.validation(msg, field="type")

    def _handle_failure(
        self,
        channel: BlockingChannel,
        delivery_tag: int,
        job: Job,
        exc: BaseException,
    ) -> Outcome:
        error_message = _error_text(exc)
        retriable = is_retriable(exc)
        log.warning(
            "Job failed: %s",
            error_message,
            extra={"retriable": retriable, "retries": job.retries},
            exc_info=not isinstance(exc, NotifyError),
        )

        if retriable and job.retries < self._delivery.max_retries:
            return self._schedule_retry(channel, delivery_tag, job, error_message)

        if retriable:
            log.error("Max retries reached, moving to dead-letter queue")
        self._record(job, NotificationStatus.FAILED, error_message)
        channel.basic_nack(delivery_tag=delivery_tag, requeue=False)
        self._notifier.notify(job, NotificationStatus.FAILED, error_message)
        return Outcome.FAILED

    def _schedule_retry(
        self,
        channel: BlockingChannel,
        delivery_tag: int,
        job: Job,
        error_message: str,
    ) -> Outcome:
        if not self._record(job, NotificationStatus.RETRYING):
            channel.basic_nack(delivery_tag=delivery_tag, requeue=False)
            return Outcome.DEAD_LETTERED

        next_job = job.next_attempt()
        try:
            self._producer.publish_retry(next_job)
        except NotifyError:
            # The record is RETRYING, so the redelivered original can be claimed.
            log.exception("Failed to publish retry, requeueing original job")
            return self._requeue(channel, delivery_tag)

        channel.basic_ack(delivery_tag=delivery_tag)
        log.info(
            "Retrying job (attempt %d of %d)",
            next_job.retries,
            self._delivery.max_retries,
        )
        self._notifier.notify(job, NotificationStatus.RETRYING, error_message)
        return Outcome.RETRYING

    # -- bookkeeping -------------------------------------------------------

    def _record(
        self,
        job: Job,
        status: NotificationStatus,
        error_message: str | None = None,
    ) -> bool:
        """Move a claimed record to *status*; False on a store error."""
        assert_transition(NotificationStatus.SENDING, status)
        try:
            self._notifications.update_status(job.notification_id, status, error_message)
        except Exception:
            log.exception("Failed to record %s status", status.name)
            return False
        log_transition(job.notification_id, NotificationStatus.SENDING, status, reason=error_message)
        return True

    def _requeue(self, channel: BlockingChannel, delivery_tag: int) -> Outcome:
        channel.basic_nack(delivery_tag=delivery_tag, requeue=True)
        self._stop_event.wait(timeout=self._delivery.store_error_backoff_seconds)
        return Outcome.REQUEUED
