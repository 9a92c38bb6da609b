"""notiflow: durable notification delivery over a message broker."""

__version__ = "1.0.0"
