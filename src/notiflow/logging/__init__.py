"""Logging subsystem for notiflow.

Public API::

    from notiflow.logging import configure_logging, job_context

    configure_logging(settings.logging)
"""

from notiflow.logging.setup import configure_logging, job_context

__all__ = ["configure_logging", "job_context"]
