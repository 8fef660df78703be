from celery import Celery

from companyos.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "companyos",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["companyos.notifications.tasks"],
)
celery_app.conf.beat_schedule = {
    "deliver-pending-notifications": {
        "task": "companyos.notifications.deliver_pending",
        "schedule": float(settings.notification_poll_seconds),
    },
}
