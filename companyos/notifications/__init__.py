from companyos.notifications.dispatcher import NotificationTrigger, enqueue_notification
from companyos.notifications.models import NotificationOutbox
from companyos.notifications.worker import (
    DeliveryReport,
    LoggingNotificationTransport,
    NotificationTransport,
    NotificationWorker,
    WebhookNotificationTransport,
    build_transport,
)

__all__ = [
    "DeliveryReport",
    "LoggingNotificationTransport",
    "NotificationOutbox",
    "NotificationTransport",
    "NotificationTrigger",
    "NotificationWorker",
    "WebhookNotificationTransport",
    "build_transport",
    "enqueue_notification",
]
