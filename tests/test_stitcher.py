from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from companyos.core.database import Base
from companyos.crm.models import CRMLead
from companyos.directory.models import Contact, Profile
from companyos.platform.data.stitch import RelationSpec, collect_ids, fetch_lookup, stitch


OWNER = RelationSpec(name="owner", model=Profile, foreign_key="owner_id")
CONTACT = RelationSpec(name="contact", model=Contact, foreign_key="contact_id")


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
def db_session(engine: Engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def selects(engine: Engine) -> Generator[list[str], None, None]:
    captured: list[str] = []

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):  # type: ignore[no-untyped-def]
        if statement.lstrip().upper().startswith("SELECT"):
            captured.append(statement)

    event.listen(engine, "before_cursor_execute", before_cursor_execute)
    yield captured
    event.remove(engine, "before_cursor_execute", before_cursor_execute)


def _owners(session: Session, count: int) -> list[Profile]:
    owners = [Profile(user_id=f"owner-{index}", first_name=f"Owner{index}") for index in range(count)]
    session.add_all(owners)
    session.commit()
    return owners


def test_fifty_leads_with_ten_owners_issue_one_owner_query(db_session: Session, selects: list[str]) -> None:
    owners = _owners(db_session, 10)
    leads = [CRMLead(owner_id=owners[index % 10].id) for index in range(50)]
    db_session.add_all(leads)
    db_session.commit()
    for lead in leads:
        db_session.refresh(lead)
    selects.clear()

    rows = stitch(db_session, leads, [OWNER])

    assert len(selects) == 1
    assert "core_profile" in selects[0]
    assert len(rows) == 50
    for row in rows:
        assert row["owner"].id == row.row.owner_id


def test_missing_and_deleted_relations_become_none(db_session: Session) -> None:
    live, gone = _owners(db_session, 2)
    gone.deleted_at = datetime.now(timezone.utc)
    leads = [
        CRMLead(owner_id=live.id),
        CRMLead(owner_id=gone.id),
        CRMLead(owner_id=uuid.uuid4()),
        CRMLead(owner_id=None),
    ]
    db_session.add_all(leads)
    db_session.commit()

    rows = stitch(db_session, leads, [OWNER, CONTACT])

    assert [row.row for row in rows] == leads
    assert rows[0]["owner"].id == live.id
    assert rows[1]["owner"] is None
    assert rows[2]["owner"] is None
    assert rows[3]["owner"] is None
    assert all(row["contact"] is None for row in rows)


def test_deleted_relations_can_be_included_on_request(db_session: Session) -> None:
    (gone,) = _owners(db_session, 1)
    gone.deleted_at = datetime.now(timezone.utc)
    db_session.commit()

    lookup = fetch_lookup(db_session, Profile, [gone.id], exclude_deleted=False)

    assert list(lookup) == [gone.id]


def test_no_foreign_ids_means_no_query(db_session: Session, selects: list[str]) -> None:
    leads = [CRMLead(owner_id=None), CRMLead(owner_id=None)]

    rows = stitch(db_session, leads, [OWNER])

    assert selects == []
    assert [row["owner"] for row in rows] == [None, None]


def test_collect_ids_is_distinct_and_ordered() -> None:
    first, second = uuid.uuid4(), uuid.uuid4()
    leads = [CRMLead(owner_id=second), CRMLead(owner_id=None), CRMLead(owner_id=first), CRMLead(owner_id=second)]

    assert collect_ids(leads, "owner_id") == [second, first]
