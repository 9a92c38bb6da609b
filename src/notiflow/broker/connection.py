"""Broker connection manager.

One :class:`BrokerConnection` owns a single AMQP connection and at most
two channels on it: a *consume* channel (prefetch-limited, explicit
acks) and a *confirm* channel (publisher confirms enabled).  Both are
opened lazily on first use and re-opened on demand after
:meth:`BrokerConnection.invalidate`.

pika's ``BlockingConnection`` is not thread-safe: a connection manager
must only be used from the thread that owns it.  The worker and the
API-side producer therefore each construct their own.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

import pika
from pika.exceptions import AMQPConnectionError, AMQPError

from notiflow.core.errors import NotifyError

if TYPE_CHECKING:
    from pika.adapters.blocking_connection import BlockingChannel

    from notiflow.config.settings import BrokerSettings

log = logging.getLogger(__name__)


class BrokerConnection:
    """Lazily-connected AMQP connection with consume and confirm channels."""

    def __init__(self, settings: BrokerSettings, *, name: str = "notiflow") -> None:
        self._settings = settings
        self._name = name
        self._lock = threading.RLock()
        self._connection: pika.BlockingConnection | None = None
        self._consume_channel: BlockingChannel | None = None
        self._confirm_channel: BlockingChannel | None = None

    # -- connection --------------------------------------------------------

    def _parameters(self) -> pika.URLParameters:
        params = pika.URLParameters(self._settings.url)
        params.heartbeat = self._settings.heartbeat_seconds
        params.blocked_connection_timeout = self._settings.blocked_connection_timeout
        params.socket_timeout = self._settings.socket_timeout
        params.connection_attempts = self._settings.connection_attempts
        params.retry_delay = self._settings.retry_delay_seconds
        params.client_properties = {"connection_name": self._name}
        return params

    def _ensure_connection(self) -> pika.BlockingConnection:
        if self._connection is not None and self._connection.is_open:
            return self._connection

        # A dead connection invalidates its channels too
        self._drop_channels()
        params = self._parameters()
        log.info(
            "Connecting to broker at %s:%s",
            params.host,
            params.port,
            extra={"vhost": params.virtual_host},
        )
        try:
            self._connection = pika.BlockingConnection(params)
        except AMQPConnectionError as exc:
            self._connection = None
            log.exception("Failed to connect to broker")
            raise NotifyError.unavailable("broker", exc) from exc
        log.info("Broker connection established")
        return self._connection

    @property
    def is_open(self) -> bool:
        return self._connection is not None and self._connection.is_open

    def is_healthy(self) -> bool:
        """Return True if the connection is open and services its I/O."""
        with self._lock:
            if not self.is_open:
                return False
            try:
                self._connection.process_data_events(time_limit=0)  # type: ignore[union-attr]
            except AMQPError:
                log.warning("Broker health check failed", exc_info=True)
                return False
            return True

    # -- channels ----------------------------------------------------------

    def consume_channel(self, prefetch_count: int = 1) -> BlockingChannel:
        """Return the consume channel, opening it with *prefetch_count* QoS."""
        with self._lock:
            if self._consume_channel is not None and self._consume_channel.is_open:
                return self._consume_channel
            channel = self._ensure_connection().channel()
            channel.basic_qos(prefetch_count=prefetch_count)
            self._consume_channel = channel
            log.debug("Consume channel opened (prefetch=%d)", prefetch_count)
            return channel

    def confirm_channel(self) -> BlockingChannel:
        """Return the publisher-confirm channel."""
        with self._lock:
            if self._confirm_channel is not None and self._confirm_channel.is_open:
                return self._confirm_channel
            channel = self._ensure_connection().channel()
            channel.confirm_delivery()
            self._confirm_channel = channel
            log.debug("Confirm channel opened")
            return channel

    def open_channel(self) -> BlockingChannel:
        """Open a fresh, unmanaged channel (topology declaration, stats).

        The caller closes it.  A broker-side precondition failure only
        kills this channel, never the managed ones.
        """
        with self._lock:
            return self._ensure_connection().channel()

    # -- lifecycle ---------------------------------------------------------

    def _drop_channels(self) -> None:
        self._consume_channel = None
        self._confirm_channel = None

    def invalidate(self) -> None:
        """Forget the current connection so the next use reconnects."""
        with self._lock:
            connection = self._connection
            self._connection = None
            self._drop_channels()
            if connection is not None and connection.is_open:
                try:
                    connection.close()
                except AMQPError:
                    log.debug("Ignoring error closing invalidated connection", exc_info=True)
            log.warning("Broker connection invalidated")

    def close(self) -> None:
        """Close channels and connection gracefully."""
        with self._lock:
            for channel in (self._consume_channel, self._confirm_channel):
                if channel is not None and channel.is_open:
                    try:
                        channel.close()
                    except AMQPError:
                        log.debug("Ignoring error closing channel", exc_info=True)
            self._drop_channels()
            if self._connection is not None and self._connection.is_open:
                try:
                    self._connection.close()
                except AMQPError:
                    log.exception("Error closing broker connection")
            self._connection = None
            log.info("Broker connection closed")
