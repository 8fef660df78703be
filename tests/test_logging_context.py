from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from companyos.context import reset_correlation_id, set_correlation_id
from companyos.core.config import get_settings
from companyos.core.database import Base, get_db
from companyos.directory.models import Profile
from companyos.logging import JsonLogFormatter
from companyos.main import app


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    db_session.add(Profile(user_id="user-1", role="creative"))
    db_session.commit()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth() -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": "user-1"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    lead_id = uuid.uuid4()
    response = client.get(f"/api/crm/leads/{lead_id}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 401

    records = [
        record for record in caplog.records if record.name == "companyos.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/leads/{lead_id}"
        and getattr(record, "status_code", None) == 401
        and getattr(record, "outcome", None) == "denied"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_guard_denial_is_logged_with_reason(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/crm/leads", headers={**_auth(), "X-Correlation-Id": "deny-1"})
    assert response.status_code == 403

    denials = [record for record in caplog.records if record.getMessage() == "guard.denied"]
    assert denials
    assert getattr(denials[-1], "reason", None) == "permission"
    assert getattr(denials[-1], "correlation_id", None) == "deny-1"
    assert getattr(denials[-1], "user_id", None) == "user-1"


def test_json_formatter_keeps_known_fields_only() -> None:
    token = set_correlation_id("fmt-1")
    try:
        record = logging.getLogger("companyos.test").makeRecord(
            "companyos.test",
            logging.INFO,
            __file__,
            1,
            "gateway.storage_failure",
            None,
            None,
            extra={"entity": "leads", "operation": "list", "password": "hunter2", "error": "x" * 600},
        )
        record.correlation_id = "fmt-1"
        record.user_id = "user-1"
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_correlation_id(token)

    assert payload["msg"] == "gateway.storage_failure"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["user_id"] == "user-1"
    assert payload["fields"]["entity"] == "leads"
    assert payload["fields"]["operation"] == "list"
    assert "password" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_unauthenticated_requests_carry_no_user_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/crm/leads")
    assert response.status_code == 401

    records = [record for record in caplog.records if record.name.startswith("companyos")]
    assert records
    assert all(getattr(record, "user_id", None) is None for record in records)
