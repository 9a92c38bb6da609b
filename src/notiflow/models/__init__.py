"""Entity models for notiflow.

All models are frozen dataclasses.  Use :func:`dataclasses.replace`
for modifications (copy-on-write).
"""

from notiflow.models.job import Job
from notiflow.models.notification import Notification, NotificationStats

__all__ = [
    "Job",
    "Notification",
    "NotificationStats",
]
