from .state_entry import StateEntry
from .task import Task, TaskStatus
from .webhook_delivery import WebhookDelivery, DeliveryStatus
from .notification import Notification, NotificationStatus

__all__ = [
    "StateEntry",
    "Task",
    "TaskStatus",
    "WebhookDelivery",
    "DeliveryStatus",
    "Notification",
    "NotificationStatus",
]
