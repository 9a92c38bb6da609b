"""Durable queue topology: main queue, retry queues, dead-letter pair.

::

    producer ──> [main queue] ──(nack, requeue=False / TTL / overflow)──> dlx ──> [dlq]
                     ^
                     └──(queue TTL)── [retry queue .1 .. .N] <── worker

There is one retry queue per backoff step, named ``<queues.retry>.<step>``
for steps ``1..delivery.max_retries``.  Each carries a fixed queue-level
TTL equal to that step's delay.  The broker only expires messages at the
head of a queue, so mixing delays in one queue would hold short delays
behind long ones.

Every declaration is idempotent.  Re-declaring an existing queue with
different arguments makes the broker close the channel with
``PRECONDITION_FAILED`` (406), reported here as a topology error.
Changing the backoff settings therefore requires deleting the old retry
queues first.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pika.exceptions import ChannelClosedByBroker

from notiflow.core.errors import NotifyError

if TYPE_CHECKING:
    from pika.adapters.blocking_connection import BlockingChannel

    from notiflow.config.settings import DeliverySettings, QueueSettings

log = logging.getLogger(__name__)

_PRECONDITION_FAILED = 406


def retry_delay_seconds(delivery: DeliverySettings, attempt: int) -> int:
    """Backoff before requeue number *attempt* (1-based), capped."""
    delay = delivery.retry_base_delay_seconds * (
        delivery.retry_backoff_multiplier ** max(attempt - 1, 0)
    )
    return int(min(delay, delivery.retry_max_delay_seconds))


def retry_queue_name(queues: QueueSettings, step: int) -> str:
    return f"{queues.retry}.{step}"


def retry_steps(delivery: DeliverySettings) -> range:
    return range(1, delivery.max_retries + 1)


def main_queue_arguments(queues: QueueSettings) -> dict[str, Any]:
    return {
        "x-message-ttl": queues.message_ttl_ms,
        "x-max-length": queues.max_length,
        "x-dead-letter-exchange": queues.dead_letter_exchange,
        "x-dead-letter-routing-key": queues.dead_letter_routing_key,
    }


def retry_queue_arguments(
    queues: QueueSettings,
    delivery: DeliverySettings,
    step: int,
) -> dict[str, Any]:
    """Expired retry messages go back to the main queue via the default exchange."""
    return {
        "x-message-ttl": retry_delay_seconds(delivery, step) * 1000,
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": queues.main,
    }


def declare_topology(
    channel: BlockingChannel,
    queues: QueueSettings,
    delivery: DeliverySettings,
) -> None:
    """Declare the exchange, queues and binding.

    Raises
    ------
    NotifyError
        ``TOPOLOGY`` when an existing structure was declared with
        incompatible arguments; ``UNAVAILABLE`` when the broker closes
        the channel for any other reason (for example access refused).

    """
    try:
        channel.exchange_declare(
            exchange=queues.dead_letter_exchange,
            exchange_type="direct",
            durable=True,
        )
        channel.queue_declare(queue=queues.dead_letter, durable=True)
        channel.queue_bind(
            queue=queues.dead_letter,
            exchange=queues.dead_letter_exchange,
            routing_key=queues.dead_letter_routing_key,
        )
        channel.queue_declare(
            queue=queues.main,
            durable=True,
            arguments=main_queue_arguments(queues),
        )
        for step in retry_steps(delivery):
            channel.queue_declare(
                queue=retry_queue_name(queues, step),
                durable=True,
                arguments=retry_queue_arguments(queues, delivery, step),
            )
    except ChannelClosedByBroker as exc:
        if exc.reply_code == _PRECONDITION_FAILED:
            log.critical("Broker topology drift detected: %s", exc.reply_text)
            msg = f"Incompatible queue declaration: {exc.reply_text}"
            raise NotifyError.topology(msg, reply_code=exc.reply_code) from exc
        log.error(
            "Broker closed the channel during topology declaration: %s %s",
            exc.reply_code,
            exc.reply_text,
        )
        raise NotifyError.unavailable("broker", exc) from exc

    log.info(
        "Queue topology declared",
        extra={
            "queue": queues.main,
            "retry_queues": [retry_queue_name(queues, s) for s in retry_steps(delivery)],
            "dlx": queues.dead_letter_exchange,
            "dlq": queues.dead_letter,
        },
    )
