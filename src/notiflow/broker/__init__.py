"""AMQP broker integration: connection manager, topology and producer."""

from notiflow.broker.connection import BrokerConnection
from notiflow.broker.producer import JobProducer
from notiflow.broker.topology import declare_topology, retry_delay_seconds, retry_queue_name

__all__ = [
    "BrokerConnection",
    "JobProducer",
    "declare_topology",
    "retry_delay_seconds",
    "retry_queue_name",
]
