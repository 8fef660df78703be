"""Batched enrichment of rows with entities that live in another namespace.

The query layer cannot join across namespaces, so every "full" view follows
the same shape: fetch the parents, collect the distinct foreign ids per
relation, issue one ``WHERE id IN (...)`` query per relation and zip the
results back by id. A related row that is missing or soft-deleted becomes
``None``; it never drops the parent and never raises.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from sqlalchemy import inspect, select
from sqlalchemy.orm import Session

from companyos.metrics import observe_relation_fetch


ParentT = TypeVar("ParentT")

_MAX_IDS_PER_QUERY = 1000


@dataclass(frozen=True, slots=True)
class RelationSpec:
    name: str
    model: type[Any]
    foreign_key: str
    target_key: str = "id"
    exclude_deleted: bool = True


@dataclass(slots=True)
class StitchedRow(Generic[ParentT]):
    row: ParentT
    relations: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, name: str) -> Any:
        return self.relations.get(name)


def collect_ids(rows: Iterable[Any], attr: str) -> list[Any]:
    """Distinct non-null values of `attr`, in first-seen order."""

    seen: dict[Any, None] = {}
    for row in rows:
        value = getattr(row, attr, None)
        if value is not None:
            seen.setdefault(value, None)
    return list(seen)


def fetch_lookup(
    session: Session,
    model: type[Any],
    ids: Sequence[Any],
    *,
    key: str = "id",
    exclude_deleted: bool = True,
    relation: str | None = None,
) -> dict[Any, Any]:
    if not ids:
        return {}

    key_column = getattr(model, key)
    soft_delete = "deleted_at" in inspect(model).columns.keys() and exclude_deleted
    lookup: dict[Any, Any] = {}
    for start in range(0, len(ids), _MAX_IDS_PER_QUERY):
        chunk = list(ids[start : start + _MAX_IDS_PER_QUERY])
        stmt = select(model).where(key_column.in_(chunk))
        if soft_delete:
            stmt = stmt.where(model.deleted_at.is_(None))
        observe_relation_fetch(relation or model.__tablename__)
        for item in session.scalars(stmt).all():
            lookup[getattr(item, key)] = item
    return lookup


def stitch(
    session: Session,
    parents: Sequence[ParentT],
    relations: Sequence[RelationSpec],
) -> list[StitchedRow[ParentT]]:
    lookups = {
        spec.name: fetch_lookup(
            session,
            spec.model,
            collect_ids(parents, spec.foreign_key),
            key=spec.target_key,
            exclude_deleted=spec.exclude_deleted,
            relation=spec.name,
        )
        for spec in relations
    }

    stitched: list[StitchedRow[ParentT]] = []
    for parent in parents:
        attached: dict[str, Any] = {}
        for spec in relations:
            foreign_id = getattr(parent, spec.foreign_key, None)
            attached[spec.name] = lookups[spec.name].get(foreign_id) if foreign_id is not None else None
        stitched.append(StitchedRow(row=parent, relations=attached))
    return stitched
