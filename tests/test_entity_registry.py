from __future__ import annotations

import pytest

from companyos.crm.models import CRMLead
from companyos.entities import ENTITY_REGISTRY
from companyos.ops.models import Task
from companyos.platform.data.registry import EntityDescriptor, EntityRegistry
from companyos.platform.security.errors import UnsupportedOperationError


def test_registry_lists_known_entities() -> None:
    assert ENTITY_REGISTRY.names() == [
        "companies",
        "contacts",
        "interactions",
        "lead_status_history",
        "leads",
        "profiles",
        "tasks",
        "ticket_status_history",
        "tickets",
    ]
    assert "leads" in ENTITY_REGISTRY
    assert len(ENTITY_REGISTRY) == 9


def test_descriptor_carries_scoping_columns() -> None:
    leads = ENTITY_REGISTRY.get("leads")

    assert leads.model is CRMLead
    assert leads.namespace == "crm"
    assert leads.owner_column == "owner_id"
    assert leads.department_column == "department_id"
    assert leads.soft_delete_column == "deleted_at"


def test_unknown_entity_is_unsupported() -> None:
    with pytest.raises(UnsupportedOperationError) as exc_info:
        ENTITY_REGISTRY.get("payroll")

    assert str(exc_info.value) == "Unknown entity 'payroll'"


def test_unknown_column_is_unsupported() -> None:
    with pytest.raises(UnsupportedOperationError) as exc_info:
        ENTITY_REGISTRY.get("tasks").column("colour")

    assert str(exc_info.value) == "Unknown column 'colour' for entity 'tasks'"


def test_declared_column_must_exist_on_model() -> None:
    with pytest.raises(ValueError, match="owner_column 'owner_id'"):
        EntityDescriptor(name="tasks", model=Task, namespace="common_util", resource="tasks", owner_column="owner_id")


def test_duplicate_registration_is_rejected() -> None:
    descriptor = EntityDescriptor(name="tasks", model=Task, namespace="common_util", resource="tasks")

    with pytest.raises(ValueError, match="Duplicate entity registration: tasks"):
        EntityRegistry([descriptor, descriptor])
