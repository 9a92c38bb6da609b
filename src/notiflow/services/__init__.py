"""Delivery services: the worker state machine, callbacks and the API facade."""

from notiflow.services.callback import CallbackNotifier
from notiflow.services.notification import NotificationService
from notiflow.services.worker import DeliveryWorker, Outcome

__all__ = [
    "CallbackNotifier",
    "DeliveryWorker",
    "NotificationService",
    "Outcome",
]
