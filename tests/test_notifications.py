from __future__ import annotations

import json
import logging
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests
from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from companyos.core.config import Settings
from companyos.core.database import Base
from companyos.notifications.dispatcher import NotificationTrigger, enqueue_notification
from companyos.notifications.models import NotificationOutbox
from companyos.notifications.tasks import deliver_pending_task
from companyos.notifications.worker import (
    LoggingNotificationTransport,
    NotificationWorker,
    WebhookNotificationTransport,
    build_transport,
)
from companyos.platform.security.errors import NotificationFailureError


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class RecordingTransport:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.fail_with = fail_with
        self.payloads: list[dict[str, Any]] = []

    def send(self, payload: dict[str, Any]) -> None:
        self.payloads.append(payload)
        if self.fail_with is not None:
            raise self.fail_with


def _trigger(**overrides: Any) -> NotificationTrigger:
    values: dict[str, Any] = {
        "entity_type": "lead",
        "entity_id": "4d7c7c4e-0000-4000-8000-000000000001",
        "action": "assigned",
        "notification_type": "lead_assigned",
        "actor_id": "user-1",
        "recipients": ["user-2"],
    }
    values.update(overrides)
    return NotificationTrigger(**values)


def _queue(session: Session, count: int = 1) -> None:
    settings = Settings(notification_dedupe_window_seconds=0)
    for index in range(count):
        enqueue_notification(session, _trigger(entity_id=f"lead-{index}"), settings)
    session.commit()


def _outbox_rows(session: Session) -> list[NotificationOutbox]:
    session.expire_all()
    return list(session.scalars(select(NotificationOutbox).order_by(NotificationOutbox.entity_id.asc())).all())


def test_dedupe_key_covers_entity_action_type_and_actor() -> None:
    assert _trigger().dedupe_key == "lead:4d7c7c4e-0000-4000-8000-000000000001:assigned:lead_assigned:user-1"
    assert _trigger(actor_id=None).dedupe_key.endswith(":lead_assigned:")


def test_enqueue_adds_row_to_caller_transaction(db_session: Session) -> None:
    intent = enqueue_notification(db_session, _trigger(metadata={"source": "import"}), Settings())

    assert intent is not None
    assert intent in db_session.new
    assert db_session.scalar(select(func.count()).select_from(NotificationOutbox)) == 0

    db_session.commit()

    (stored,) = _outbox_rows(db_session)
    payload = json.loads(stored.payload_json)
    assert stored.status == "queued"
    assert stored.attempts == 0
    assert payload["recipients"] == ["user-2"]
    assert payload["metadata"] == {"source": "import"}
    assert payload["exclude_user_id"] is None


def test_rolled_back_transaction_drops_intent(db_session: Session) -> None:
    enqueue_notification(db_session, _trigger(), Settings())
    db_session.rollback()

    assert _outbox_rows(db_session) == []


def test_duplicate_within_window_is_skipped(db_session: Session) -> None:
    settings = Settings(notification_dedupe_window_seconds=60)

    assert enqueue_notification(db_session, _trigger(), settings) is not None
    assert enqueue_notification(db_session, _trigger(), settings) is None
    db_session.commit()
    assert enqueue_notification(db_session, _trigger(), settings) is None
    assert enqueue_notification(db_session, _trigger(actor_id="user-9"), settings) is not None
    db_session.commit()

    assert len(_outbox_rows(db_session)) == 2


def test_zero_window_disables_dedupe(db_session: Session) -> None:
    settings = Settings(notification_dedupe_window_seconds=0)

    enqueue_notification(db_session, _trigger(), settings)
    enqueue_notification(db_session, _trigger(), settings)
    db_session.commit()

    assert len(_outbox_rows(db_session)) == 2


def test_unserializable_payload_is_logged_not_raised(db_session: Session, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR, logger="companyos.notifications"):
        result = enqueue_notification(db_session, _trigger(metadata={"when": object()}), Settings())

    assert result is None
    assert len(db_session.new) == 0
    record = next(record for record in caplog.records if record.getMessage() == "notification.enqueue_failed")
    assert record.notification_type == "lead_assigned"


def test_worker_delivers_due_rows(db_session: Session, session_factory: sessionmaker[Session]) -> None:
    _queue(db_session, 2)
    transport = RecordingTransport()

    report = NotificationWorker(session_factory, transport, Settings()).deliver_pending()

    assert report.as_dict() == {"delivered": 2, "retried": 0, "failed": 0}
    assert [payload["entity_id"] for payload in transport.payloads] == ["lead-0", "lead-1"]
    rows = _outbox_rows(db_session)
    assert all(row.status == "delivered" for row in rows)
    assert all(row.attempts == 1 for row in rows)
    assert all(row.delivered_at is not None for row in rows)


def test_worker_respects_batch_limit(db_session: Session, session_factory: sessionmaker[Session]) -> None:
    _queue(db_session, 3)

    report = NotificationWorker(session_factory, RecordingTransport(), Settings()).deliver_pending(limit=2)

    assert report.delivered == 2
    assert [row.status for row in _outbox_rows(db_session)].count("queued") == 1


def test_failed_delivery_is_rescheduled_with_backoff(
    db_session: Session,
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    _queue(db_session)
    settings = Settings(notification_retry_base_seconds=30, notification_max_attempts=3)
    worker = NotificationWorker(session_factory, RecordingTransport(NotificationFailureError("endpoint down")), settings)

    with caplog.at_level(logging.WARNING, logger="companyos.notifications"):
        report = worker.deliver_pending()

    assert report.as_dict() == {"delivered": 0, "retried": 1, "failed": 0}
    (row,) = _outbox_rows(db_session)
    assert row.status == "queued"
    assert row.attempts == 1
    assert row.last_error == "endpoint down"
    rescheduled = db_session.scalar(
        select(func.count())
        .select_from(NotificationOutbox)
        .where(NotificationOutbox.next_attempt_at > datetime.now(timezone.utc) + timedelta(seconds=20))
    )
    assert rescheduled == 1
    record = next(record for record in caplog.records if record.getMessage() == "notification.delivery_failed")
    assert record.attempts == 1

    assert worker.deliver_pending().as_dict() == {"delivered": 0, "retried": 0, "failed": 0}


def test_delivery_fails_permanently_after_max_attempts(
    db_session: Session,
    session_factory: sessionmaker[Session],
) -> None:
    _queue(db_session)
    settings = Settings(notification_max_attempts=1)
    worker = NotificationWorker(session_factory, RecordingTransport(RuntimeError("boom")), settings)

    report = worker.deliver_pending()

    assert report.failed == 1
    (row,) = _outbox_rows(db_session)
    assert row.status == "failed"
    assert row.last_error == "boom"


def test_webhook_transport_posts_json_with_bearer_token() -> None:
    transport = WebhookNotificationTransport("https://notify.example.com/hook", token="secret", timeout=2.5)
    response = MagicMock(ok=True, status_code=200)

    with patch("companyos.notifications.worker.requests.post", return_value=response) as post:
        transport.send({"notification_type": "lead_assigned"})

    post.assert_called_once_with(
        "https://notify.example.com/hook",
        json={"notification_type": "lead_assigned"},
        headers={"Content-Type": "application/json", "Authorization": "Bearer secret"},
        timeout=2.5,
    )


def test_webhook_transport_raises_on_error_status() -> None:
    transport = WebhookNotificationTransport("https://notify.example.com/hook")
    response = MagicMock(ok=False, status_code=502, text="bad gateway")

    with patch("companyos.notifications.worker.requests.post", return_value=response):
        with pytest.raises(NotificationFailureError, match="returned 502"):
            transport.send({})


def test_webhook_transport_wraps_connection_errors() -> None:
    transport = WebhookNotificationTransport("https://notify.example.com/hook")

    with patch("companyos.notifications.worker.requests.post", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(NotificationFailureError, match="unreachable") as exc_info:
            transport.send({})

    assert isinstance(exc_info.value.__cause__, requests.ConnectionError)


def test_build_transport_prefers_configured_webhook() -> None:
    assert isinstance(build_transport(Settings(notification_webhook_url=None)), LoggingNotificationTransport)

    transport = build_transport(Settings(notification_webhook_url="https://notify.example.com/hook"))
    assert isinstance(transport, WebhookNotificationTransport)
    assert transport.url == "https://notify.example.com/hook"


def test_celery_task_runs_one_delivery_batch(db_session: Session, session_factory: sessionmaker[Session]) -> None:
    _queue(db_session, 2)

    with patch("companyos.notifications.tasks.SessionLocal", session_factory):
        result = deliver_pending_task(limit=1)

    assert result == {"delivered": 1, "retried": 0, "failed": 0}
