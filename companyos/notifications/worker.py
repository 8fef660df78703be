from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import requests
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from companyos.core.config import Settings, get_settings
from companyos.metrics import observe_notification_delivery
from companyos.notifications.models import NotificationOutbox
from companyos.platform.security.errors import NotificationFailureError, StorageFailureError


logger = logging.getLogger("companyos.notifications")
tracer = trace.get_tracer("companyos.notifications")

_MAX_ERROR_LENGTH = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationTransport(Protocol):
    def send(self, payload: dict[str, Any]) -> None:
        ...


class WebhookNotificationTransport:
    """POST each intent payload as JSON to the configured notification endpoint."""

    def __init__(self, url: str, token: str | None = None, timeout: float = 5.0) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout

    def send(self, payload: dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NotificationFailureError(f"Notification webhook unreachable: {type(exc).__name__}") from exc
        if not resp.ok:
            raise NotificationFailureError(f"Notification webhook returned {resp.status_code}: {resp.text[:200]}")


class LoggingNotificationTransport:
    def send(self, payload: dict[str, Any]) -> None:
        logger.info(
            "notification.logged",
            extra={
                "notification_type": payload.get("notification_type"),
                "entity_id": payload.get("entity_id"),
            },
        )


def build_transport(settings: Settings | None = None) -> NotificationTransport:
    settings = settings or get_settings()
    if settings.notification_webhook_url:
        return WebhookNotificationTransport(
            settings.notification_webhook_url,
            token=settings.notification_webhook_token,
            timeout=settings.notification_timeout_seconds,
        )
    return LoggingNotificationTransport()


@dataclass(slots=True)
class DeliveryReport:
    delivered: int = 0
    retried: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class NotificationWorker:
    """Deliver queued outbox rows outside of any request transaction.

    Delivery failures are logged and rescheduled with exponential backoff
    until `notification_max_attempts` is reached; they never raise.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        transport: NotificationTransport,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.transport = transport
        self.settings = settings or get_settings()

    def deliver_pending(self, limit: int | None = None) -> DeliveryReport:
        batch_size = limit or self.settings.notification_batch_size
        report = DeliveryReport()

        with tracer.start_as_current_span("notifications.deliver_pending") as span:
            session = self.session_factory()
            try:
                rows = session.scalars(
                    select(NotificationOutbox)
                    .where(
                        NotificationOutbox.status == "queued",
                        NotificationOutbox.next_attempt_at <= utcnow(),
                    )
                    .order_by(NotificationOutbox.next_attempt_at.asc(), NotificationOutbox.created_at.asc())
                    .limit(batch_size)
                    .with_for_update(skip_locked=True)
                ).all()
                for row in rows:
                    self._deliver(row, report)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error(
                    "notification.batch_storage_failure",
                    extra={"operation": "deliver_pending", "error": str(exc)},
                )
                raise StorageFailureError("notifications", "deliver_pending") from exc
            finally:
                session.close()

            span.set_attribute("delivered", report.delivered)
            span.set_attribute("retried", report.retried)
            span.set_attribute("failed", report.failed)

        observe_notification_delivery("delivered", report.delivered)
        observe_notification_delivery("retried", report.retried)
        observe_notification_delivery("failed", report.failed)
        if rows:
            logger.info("notification.batch_completed", extra=report.as_dict())
        return report

    def _deliver(self, row: NotificationOutbox, report: DeliveryReport) -> None:
        now = utcnow()
        row.attempts = (row.attempts or 0) + 1
        try:
            self.transport.send(json.loads(row.payload_json))
        except Exception as exc:
            failure = exc if isinstance(exc, NotificationFailureError) else NotificationFailureError(str(exc))
            row.last_error = str(failure)[:_MAX_ERROR_LENGTH]
            if row.attempts >= self.settings.notification_max_attempts:
                row.status = "failed"
                report.failed += 1
            else:
                delay = self.settings.notification_retry_base_seconds * 2 ** (row.attempts - 1)
                row.next_attempt_at = now + timedelta(seconds=delay)
                report.retried += 1
            logger.warning(
                "notification.delivery_failed",
                extra={
                    "intent_id": str(row.id),
                    "notification_type": row.notification_type,
                    "attempts": row.attempts,
                    "status": row.status,
                    "error": row.last_error,
                },
            )
            return

        row.status = "delivered"
        row.delivered_at = now
        row.last_error = None
        report.delivered += 1
