"""Delivery worker subcommand."""

from __future__ import annotations

import logging
import signal
import sys
import threading

log = logging.getLogger(__name__)


def build_worker(settings, db, connection=None):
    """Wire a :class:`DeliveryWorker` from the settings tree and an initialised *db*."""
    from notiflow.broker import BrokerConnection, JobProducer
    from notiflow.delivery import SmtpChannel
    from notiflow.notifications import TemplateRenderer
    from notiflow.repositories import NotificationRepository
    from notiflow.services import CallbackNotifier, DeliveryWorker

    if connection is None:
        connection = BrokerConnection(settings.broker, name="notiflow-worker")
    notifications = NotificationRepository(db)
    return DeliveryWorker(
        connection=connection,
        producer=JobProducer(connection, settings.queues, settings.delivery),
        notifications=notifications,
        channel=SmtpChannel(settings.smtp),
        renderer=TemplateRenderer(settings.smtp.templates_path),
        notifier=CallbackNotifier(settings.callback, notifications),
        queues=settings.queues,
        delivery=settings.delivery,
    )


def run_worker(config, args) -> None:
    """Initialise the store, declare topology, then consume until signalled."""
    from notiflow.broker import BrokerConnection, declare_topology
    from notiflow.core.errors import NotifyError
    from notiflow.db import init_database

    settings = config.settings

    try:
        db = init_database(settings.database)
    except Exception as exc:
        if args.debug:
            raise
        log.exception("Database initialisation failed")
        print(f"notiflow: error: database initialisation failed: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    # Topology is declared on a short-lived connection owned by this thread;
    # the worker thread opens its own.
    setup = BrokerConnection(settings.broker, name="notiflow-setup")
    try:
        channel = setup.open_channel()
        declare_topology(channel, settings.queues, settings.delivery)
    except NotifyError as exc:
        print(f"notiflow: error: {exc.message}", file=sys.stderr)  # noqa: T201
        sys.exit(1)
    finally:
        setup.close()

    worker = build_worker(settings, db)
    stopping = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        if stopping.is_set():
            return
        stopping.set()
        log.info("Received %s, stopping delivery worker", signal.Signals(signum).name)
        threading.Thread(target=worker.stop, name="worker-shutdown", daemon=True).start()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    worker.start()
    worker.wait()
    log.info("Shutdown complete")
