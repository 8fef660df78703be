from __future__ import annotations

from companyos.core.celery_app import celery_app
from companyos.core.config import get_settings
from companyos.core.database import SessionLocal
from companyos.notifications.worker import NotificationWorker, build_transport


@celery_app.task(name="companyos.notifications.deliver_pending")
def deliver_pending_task(limit: int | None = None) -> dict[str, int]:
    settings = get_settings()
    worker = NotificationWorker(SessionLocal, build_transport(settings), settings)
    return worker.deliver_pending(limit).as_dict()
