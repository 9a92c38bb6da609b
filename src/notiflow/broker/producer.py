"""Job producer: publish-confirmed enqueue onto the main and retry queues."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

import pika
from pika.exceptions import AMQPConnectionError, AMQPError, NackError, UnroutableError

from notiflow.broker.topology import retry_delay_seconds, retry_queue_name
from notiflow.core.errors import NotifyError
from notiflow.core.types import JobType
from notiflow.models.job import Job, check_notification_id

if TYPE_CHECKING:
    from notiflow.broker.connection import BrokerConnection
    from notiflow.config.settings import DeliverySettings, QueueSettings

log = logging.getLogger(__name__)

_JOB_TYPES = frozenset(t.value for t in JobType)


class JobProducer:
    """Publishes delivery jobs and waits for broker confirmation.

    Every publish goes through the connection's confirm channel with
    ``mandatory=True``: :meth:`enqueue` returns only once the broker
    has taken durable responsibility for the message.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        queues: QueueSettings,
        delivery: DeliverySettings,
    ) -> None:
        self._connection = connection
        self._queues = queues
        self._delivery = delivery
        self._lock = threading.Lock()

    # -- publishing --------------------------------------------------------

    def _publish(
        self,
        routing_key: str,
        job: Job,
        *,
        reconnect: bool = True,
    ) -> None:
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=pika.DeliveryMode.Persistent,
            message_id=job.notification_id,
            type=job.type,
        )
        body = job.to_bytes()

        with self._lock:
            # One reconnect on a dropped connection; nothing was confirmed.
            # The worker publishes retries on the connection that holds its
            # unacked delivery, so it never reconnects here.
            for attempt in (1, 2):
                try:
                    self._connection.confirm_channel().basic_publish(
                        exchange="",
                        routing_key=routing_key,
                        body=body,
                        properties=properties,
                        mandatory=True,
                    )
                    return
                except (NackError, UnroutableError) as exc:
                    log.error(
                        "Broker refused job for %s",
                        routing_key,
                        extra={"notification_id": job.notification_id},
                    )
                    raise NotifyError.unavailable("broker", exc) from exc
                except AMQPConnectionError as exc:
                    if reconnect and attempt == 1:
                        log.warning("Broker connection lost while publishing, reconnecting")
                        self._connection.invalidate()
                        continue
                    raise NotifyError.unavailable("broker", exc) from exc
                except AMQPError as exc:
                    log.exception("Failed to publish job to %s", routing_key)
                    raise NotifyError.unavailable("broker", exc) from exc

    def enqueue(self, job_type: str, data: dict[str, Any]) -> Job:
        """Publish a fresh job (``retries = 0``) onto the main queue.

        Raises
        ------
        NotifyError
            ``VALIDATION`` for an unknown type or a missing or non-UUID
            ``notificationId``; ``UNAVAILABLE`` when the broker does not
            confirm the publish.

        """
        if job_type not in _JOB_TYPES:
            msg = f"Unknown job type: {job_type}"
            raise NotifyError.validation(msg, field="type")
        check_notification_id(data.get("notificationId"))

        job = Job(type=str(job_type), data=dict(data))
        try:
            self._publish(self._queues.main, job)
        except NotifyError:
            log.error("Failed to add job to queue", extra={"type": job_type})
            raise

        log.info(
            "Job added to queue",
            extra={"type": job_type, "to": job.recipient, "notification_id": job.notification_id},
        )
        return job

    def enqueue_verification(self, data: dict[str, Any]) -> Job:
        return self.enqueue(JobType.VERIFICATION, data)

    def enqueue_notification(self, data: dict[str, Any]) -> Job:
        return self.enqueue(JobType.NOTIFICATION, data)

    def publish_retry(self, job: Job) -> int:
        """Publish *job* onto its backoff step's retry queue; returns the delay in seconds.

        *job* already carries its incremented ``retries`` counter, which
        selects the retry queue and so the delay.
        """
        step = max(1, min(job.retries, self._delivery.max_retries))
        queue = retry_queue_name(self._queues, step)
        delay = retry_delay_seconds(self._delivery, step)
        self._publish(queue, job, reconnect=False)
        log.info(
            "Job scheduled for retry in %ds",
            delay,
            extra={"retry_queue": queue, "retries": job.retries},
        )
        return delay

    # -- introspection -----------------------------------------------------

    def get_stats(self) -> dict[str, Any] | None:
        """Message and consumer counts of the main queue, or None if unavailable."""
        try:
            channel = self._connection.open_channel()
            try:
                frame = channel.queue_declare(queue=self._queues.main, passive=True)
            finally:
                if channel.is_open:
                    channel.close()
        except (AMQPError, NotifyError):
            log.exception("Failed to get queue stats")
            return None
        return {
            "queue": self._queues.main,
            "message_count": frame.method.message_count,
            "consumer_count": frame.method.consumer_count,
        }
