from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from companyos import audit
from companyos.core.config import get_settings
from companyos.core.database import Base, get_db
from companyos.crm.models import CRMLead
from companyos.crm.service import LeadService
from companyos.directory.models import Profile
from companyos.main import app
from companyos.platform.security.errors import StorageFailureError


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
def clear_state() -> Generator[None, None, None]:
    audit.clear()
    get_settings.cache_clear()
    yield
    audit.clear()
    get_settings.cache_clear()


@pytest.fixture()
def profiles(db_session: Session) -> dict[str, Profile]:
    department = uuid.uuid4()
    rows = {
        "employee": Profile(user_id="user-1", first_name="Erin", role="employee", department_id=department),
        "colleague": Profile(user_id="user-2", first_name="Cole", role="employee", department_id=department),
        "manager": Profile(user_id="manager-1", first_name="Mona", role="manager", department_id=department),
        "admin": Profile(user_id="admin-1", first_name="Ada", role="admin"),
        "creative": Profile(user_id="creative-1", role="creative"),
        "legacy": Profile(user_id="legacy-1", role="intern"),
    }
    db_session.add_all(rows.values())
    db_session.commit()
    return rows


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth(sub: str, permissions: list[str] | None = None) -> dict[str, str]:
    settings = get_settings()
    claims: dict[str, object] = {"sub": sub}
    if permissions is not None:
        claims["permissions"] = permissions
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def _create_lead(client: TestClient, sub: str = "user-1", **body: object) -> dict:
    response = client.post("/api/crm/leads", json=body, headers=_auth(sub))
    assert response.status_code == 201, response.text
    return response.json()


def test_missing_token_is_unauthenticated(client: TestClient, profiles: dict[str, Profile]) -> None:
    response = client.get("/api/crm/leads", headers={"X-Correlation-Id": "corr-401"})

    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "unauthenticated"
    assert body["message"] == "Query requires authentication"
    assert body["correlation_id"] == "corr-401"
    assert response.headers["x-correlation-id"] == "corr-401"


def test_invalid_token_and_unknown_profile_are_unauthenticated(client: TestClient, profiles: dict[str, Profile]) -> None:
    bad_token = client.get("/api/crm/leads", headers={"Authorization": "Bearer not-a-jwt"})
    no_profile = client.get("/api/crm/leads", headers=_auth("ghost-user"))
    unknown_role = client.get("/api/crm/leads", headers=_auth("legacy-1"))

    assert bad_token.status_code == 401
    assert no_profile.status_code == 401
    assert unknown_role.status_code == 401


def test_missing_permission_is_forbidden(client: TestClient, profiles: dict[str, Profile]) -> None:
    response = client.get("/api/crm/leads", headers=_auth("creative-1"))

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "unauthorized"
    assert body["message"] == "Requires permission: leads:read"


def test_token_permissions_extend_role(client: TestClient, profiles: dict[str, Profile]) -> None:
    response = client.get("/api/crm/leads", headers=_auth("creative-1", ["leads:read"]))

    assert response.status_code == 200
    assert response.json()["total"] == 0


def test_create_and_read_lead(client: TestClient, profiles: dict[str, Profile]) -> None:
    created = _create_lead(client, source="web", value="2500.00", tags=["inbound"])

    assert created["owner_id"] == str(profiles["employee"].id)
    assert created["department_id"] == str(profiles["employee"].department_id)
    assert created["tags"] == ["inbound"]

    response = client.get(f"/api/crm/leads/{created['id']}", headers=_auth("user-1"))
    assert response.status_code == 200
    body = response.json()
    assert body["owner"]["first_name"] == "Erin"
    assert body["contact"] is None
    assert body["interactions_count"] == 0


def test_foreign_lead_is_not_found_for_employee_but_visible_to_manager(
    client: TestClient,
    profiles: dict[str, Profile],
) -> None:
    created = _create_lead(client)

    hidden = client.get(f"/api/crm/leads/{created['id']}", headers=_auth("user-2"))
    missing = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers=_auth("user-2"))
    manager = client.get(f"/api/crm/leads/{created['id']}", headers=_auth("manager-1"))

    assert hidden.status_code == 404
    assert hidden.json()["code"] == "not_found_or_denied"
    assert hidden.json()["details"] == {"entity": "leads"}
    assert {key: value for key, value in hidden.json().items() if key != "correlation_id"} == {
        key: value for key, value in missing.json().items() if key != "correlation_id"
    }
    assert manager.status_code == 200


def test_list_filters_and_paginates(client: TestClient, profiles: dict[str, Profile]) -> None:
    for status in ("new", "new", "qualified"):
        _create_lead(client, status=status)

    page = client.get("/api/crm/leads?status=new&page_size=1&page=2", headers=_auth("user-1"))

    assert page.status_code == 200
    body = page.json()
    assert body["total"] == 2
    assert body["total_pages"] == 2
    assert body["page"] == 2
    assert len(body["leads"]) == 1
    assert body["leads"][0]["status"] == "new"


def test_status_change_is_recorded(client: TestClient, profiles: dict[str, Profile]) -> None:
    created = _create_lead(client)

    patched = client.patch(f"/api/crm/leads/{created['id']}", json={"status": "contacted"}, headers=_auth("user-1"))
    posted = client.post(
        f"/api/crm/leads/{created['id']}/status",
        json={"status": "qualified", "notes": "demo booked"},
        headers=_auth("user-1"),
    )
    history = client.get(f"/api/crm/leads/{created['id']}/status-history", headers=_auth("user-1"))

    assert patched.status_code == 200
    assert patched.json()["status"] == "contacted"
    assert posted.status_code == 200
    assert posted.json()["status"] == "qualified"
    assert history.status_code == 200
    assert {entry["status"] for entry in history.json()} == {"new", "contacted", "qualified"}
    assert all(entry["created_by_profile"]["first_name"] == "Erin" for entry in history.json())


def test_interactions_endpoints(client: TestClient, profiles: dict[str, Profile]) -> None:
    created = _create_lead(client)

    added = client.post(
        f"/api/crm/leads/{created['id']}/interactions",
        json={"type": "meeting", "subject": "Kickoff", "duration_minutes": 30},
        headers=_auth("user-1"),
    )
    listed = client.get(f"/api/crm/leads/{created['id']}/interactions", headers=_auth("user-1"))
    foreign = client.get(f"/api/crm/leads/{created['id']}/interactions", headers=_auth("user-2"))

    assert added.status_code == 201
    assert added.json()["entity_id"] == created["id"]
    assert [item["subject"] for item in listed.json()] == ["Kickoff"]
    assert foreign.status_code == 404


def test_delete_requires_permission_and_hides_row(
    client: TestClient,
    db_session: Session,
    profiles: dict[str, Profile],
) -> None:
    created = _create_lead(client)

    denied = client.delete(f"/api/crm/leads/{created['id']}", headers=_auth("user-1"))
    deleted = client.delete(f"/api/crm/leads/{created['id']}", headers=_auth("admin-1"))
    again = client.delete(f"/api/crm/leads/{created['id']}", headers=_auth("admin-1"))

    assert denied.status_code == 403
    assert denied.json()["message"] == "Requires permission: leads:delete"
    assert deleted.status_code == 204
    assert again.status_code == 404
    db_session.expire_all()
    stored = db_session.scalar(select(CRMLead).where(CRMLead.id == uuid.UUID(created["id"])))
    assert stored is not None
    assert stored.deleted_at is not None


def test_mutation_audit_carries_request_correlation_id(client: TestClient, profiles: dict[str, Profile]) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"source": "referral"},
        headers={**_auth("user-1"), "X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 201

    entries = audit.entries_for("leads", response.json()["id"])
    assert entries
    assert entries[-1]["correlation_id"] == "corr-audit-1"


def test_storage_failure_returns_generic_message(
    client: TestClient,
    profiles: dict[str, Profile],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def failing_list(self: LeadService, *args: object, **kwargs: object) -> None:
        cause = OperationalError("SELECT secret_column FROM crm_lead", {}, Exception("disk I/O error"))
        raise StorageFailureError("leads", "list") from cause

    monkeypatch.setattr(LeadService, "list_leads", failing_list)

    response = client.get("/api/crm/leads", headers=_auth("user-1"))

    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "storage_failure"
    assert body["message"] == "Internal storage error"
    assert "secret_column" not in response.text
    assert "disk I/O" not in response.text


def test_null_status_patch_is_a_validation_error(client: TestClient, profiles: dict[str, Profile]) -> None:
    created = _create_lead(client)

    response = client.patch(f"/api/crm/leads/{created['id']}", json={"status": None}, headers=_auth("user-1"))

    assert response.status_code == 422
    assert client.get(f"/api/crm/leads/{created['id']}", headers=_auth("user-1")).json()["status"] == "new"
