from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from companyos.context import get_correlation_id
from companyos.core.config import Settings, get_settings
from companyos.metrics import observe_notification_enqueued
from companyos.notifications.models import NotificationOutbox
from companyos.platform.security.errors import NotificationFailureError


logger = logging.getLogger("companyos.notifications")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class NotificationTrigger:
    entity_type: str
    entity_id: str
    action: str
    notification_type: str
    actor_id: str | None = None
    recipients: list[str] | None = None
    exclude_user_id: str | None = None
    metadata: dict[str, Any] | None = field(default=None)

    @property
    def dedupe_key(self) -> str:
        return ":".join(
            (self.entity_type, str(self.entity_id), self.action, self.notification_type, self.actor_id or "")
        )

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["entity_id"] = str(self.entity_id)
        return payload


def enqueue_notification(
    session: Session,
    trigger: NotificationTrigger,
    settings: Settings | None = None,
) -> NotificationOutbox | None:
    """Add an outbox row for `trigger` to the caller's session.

    The row is neither flushed nor committed here; it lands with the caller's
    transaction. Returns None when the trigger is a recent duplicate or its
    payload cannot be serialized.
    """

    settings = settings or get_settings()
    key = trigger.dedupe_key

    if _is_duplicate(session, key, settings.notification_dedupe_window_seconds):
        observe_notification_enqueued(trigger.notification_type, "deduplicated")
        logger.info(
            "notification.deduplicated",
            extra={"notification_type": trigger.notification_type, "entity_id": str(trigger.entity_id)},
        )
        return None

    try:
        payload_json = json.dumps(trigger.to_payload())
    except (TypeError, ValueError) as exc:
        failure = NotificationFailureError(f"Cannot serialize notification payload for {key}")
        observe_notification_enqueued(trigger.notification_type, failure.code)
        logger.error(
            "notification.enqueue_failed",
            extra={
                "notification_type": trigger.notification_type,
                "entity_id": str(trigger.entity_id),
                "error": f"{failure}: {exc}",
            },
        )
        return None

    now = utcnow()
    intent = NotificationOutbox(
        id=uuid.uuid4(),
        notification_type=trigger.notification_type,
        entity_type=trigger.entity_type,
        entity_id=str(trigger.entity_id),
        action=trigger.action,
        actor_id=trigger.actor_id,
        dedupe_key=key,
        payload_json=payload_json,
        correlation_id=get_correlation_id(),
        status="queued",
        attempts=0,
        next_attempt_at=now,
        created_at=now,
    )
    session.add(intent)
    observe_notification_enqueued(trigger.notification_type, "queued")
    logger.info(
        "notification.enqueued",
        extra={
            "intent_id": str(intent.id),
            "notification_type": trigger.notification_type,
            "entity_id": str(trigger.entity_id),
        },
    )
    return intent


def _is_duplicate(session: Session, key: str, window_seconds: int) -> bool:
    if window_seconds <= 0:
        return False

    for pending in session.new:
        if isinstance(pending, NotificationOutbox) and pending.dedupe_key == key:
            return True

    cutoff = utcnow() - timedelta(seconds=window_seconds)
    existing = session.scalar(
        select(NotificationOutbox.id)
        .where(NotificationOutbox.dedupe_key == key, NotificationOutbox.created_at >= cutoff)
        .limit(1)
    )
    return existing is not None
