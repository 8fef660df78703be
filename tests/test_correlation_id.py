from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from companyos import audit
from companyos.core.config import get_settings
from companyos.core.database import Base, get_db
from companyos.directory.models import Profile
from companyos.main import app
from companyos.notifications.models import NotificationOutbox


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.clear()
    get_settings.cache_clear()
    yield
    audit.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    db_session.add(Profile(user_id="user-1", role="employee"))
    db_session.commit()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth() -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": "user-1"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers=_auth())
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers={**_auth(), "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_truncated(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "x" * 300})
    assert response.headers.get("x-correlation-id") == "x" * 128


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    response = client.post("/api/crm/leads", json={}, headers={**_auth(), "X-Correlation-Id": "corr-audit-1"})
    assert response.status_code == 201

    lead_audits = audit.entries_for("leads")
    assert lead_audits
    assert lead_audits[-1]["correlation_id"] == "corr-audit-1"


def test_notification_intent_includes_correlation_id(client: TestClient, db_session: Session) -> None:
    response = client.post(
        "/api/ops/tickets",
        json={"title": "Badge reader offline"},
        headers={**_auth(), "X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    intent = db_session.query(NotificationOutbox).filter_by(notification_type="ticket_assigned").one()
    assert intent.correlation_id == "corr-event-1"
