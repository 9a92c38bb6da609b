"""Broker subcommands: topology declaration and queue statistics."""

from __future__ import annotations

import json
import logging
import sys

log = logging.getLogger(__name__)


def run_topology(config, args) -> None:  # noqa: ARG001
    """Declare exchange, queues and binding; exit non-zero on drift."""
    from notiflow.broker import BrokerConnection, declare_topology
    from notiflow.core.errors import ErrorKind, NotifyError

    settings = config.settings
    connection = BrokerConnection(settings.broker, name="notiflow-topology")
    try:
        declare_topology(connection.open_channel(), settings.queues, settings.delivery)
    except NotifyError as exc:
        label = "topology drift" if exc.kind is ErrorKind.TOPOLOGY else "broker unavailable"
        print(f"notiflow: error: {label}: {exc.message}", file=sys.stderr)  # noqa: T201
        sys.exit(2 if exc.kind is ErrorKind.TOPOLOGY else 1)
    finally:
        connection.close()
    print("topology OK")  # noqa: T201


def run_stats(config, args) -> None:  # noqa: ARG001
    """Print main queue statistics as JSON."""
    from notiflow.broker import BrokerConnection, JobProducer

    settings = config.settings
    connection = BrokerConnection(settings.broker, name="notiflow-stats")
    try:
        stats = JobProducer(connection, settings.queues, settings.delivery).get_stats()
        healthy = connection.is_healthy()
    finally:
        connection.close()

    if stats is None:
        print("notiflow: error: queue statistics unavailable", file=sys.stderr)  # noqa: T201
        sys.exit(1)
    print(json.dumps({**stats, "connected": healthy}, indent=2))  # noqa: T201
