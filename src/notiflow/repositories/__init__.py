"""Repository classes for the notiflow persistence layer.

Each repository extends :class:`pypgkit.BaseRepository` with custom
query methods.
"""

from notiflow.repositories.notification import NotificationRepository

__all__ = ["NotificationRepository"]
