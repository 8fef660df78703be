from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, func, select
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select
from sqlalchemy.sql.elements import ColumnElement

from companyos import audit
from companyos.metrics import observe_gateway_operation, observe_scope_miss
from companyos.platform.data.registry import EntityDescriptor, EntityRegistry
from companyos.platform.security.context import AuthContext
from companyos.platform.security.errors import (
    DataAccessError,
    NotFoundOrDeniedError,
    StorageFailureError,
    UnsupportedOperationError,
)
from companyos.platform.security.guard import AccessRequirement, AuthGuard, PermissionRequirement
from companyos.platform.security.policies import ResourceAction
from companyos.platform.security.rls import ScopeOptions, and_scope, build_scope


logger = logging.getLogger("companyos.data.gateway")
tracer = trace.get_tracer("companyos.data.gateway")

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrudGateway:
    """Authorization-enforcing CRUD over the entity registry.

    The gateway works on the session it is given and never commits: callers
    own the transaction so that a primary write, its history rows and its
    notification intents land together.
    """

    def __init__(self, session: Session, registry: EntityRegistry, guard: AuthGuard) -> None:
        self.session = session
        self.registry = registry
        self.guard = guard

    def descriptor(self, entity: str) -> EntityDescriptor[Any]:
        return self.registry.get(entity)

    def list(
        self,
        entity: str,
        *,
        scope: ScopeOptions,
        filters: Mapping[str, Any] | None = None,
        conditions: Sequence[ColumnElement[bool]] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Any]:
        descriptor = self.descriptor(entity)

        def operation(ctx: AuthContext) -> list[Any]:
            stmt = self._scoped_select(ctx, descriptor, scope, filters, conditions)
            if order_by is not None:
                column = descriptor.column(order_by)
                stmt = stmt.order_by(column.desc() if descending else column.asc())
            if limit is not None:
                stmt = stmt.limit(limit)
            if offset:
                stmt = stmt.offset(offset)
            with self._storage(descriptor, "list"):
                return list(self.session.scalars(stmt).all())

        return self._guarded(descriptor, "list", self._requirement(descriptor, ResourceAction.READ, None), operation)

    def count(
        self,
        entity: str,
        *,
        scope: ScopeOptions,
        filters: Mapping[str, Any] | None = None,
        conditions: Sequence[ColumnElement[bool]] = (),
    ) -> int:
        descriptor = self.descriptor(entity)

        def operation(ctx: AuthContext) -> int:
            predicate = self._predicate(ctx, descriptor, scope, filters, conditions)
            stmt = select(func.count()).select_from(descriptor.model)
            if predicate is not None:
                stmt = stmt.where(predicate)
            with self._storage(descriptor, "count"):
                return int(self.session.scalar(stmt) or 0)

        return self._guarded(descriptor, "count", self._requirement(descriptor, ResourceAction.READ, None), operation)

    def find_one(self, entity: str, record_id: uuid.UUID, *, scope: ScopeOptions) -> Any | None:
        descriptor = self.descriptor(entity)

        def operation(ctx: AuthContext) -> Any | None:
            row = self._load_visible(ctx, descriptor, scope, record_id, "find_one")
            if row is None:
                observe_scope_miss(descriptor.name, "find_one")
            return row

        return self._guarded(descriptor, "find_one", self._requirement(descriptor, ResourceAction.READ, None), operation)

    def create(
        self,
        entity: str,
        data: Mapping[str, Any],
        *,
        set_owner: bool = False,
        set_department: bool = False,
        permission: PermissionRequirement | None = None,
    ) -> Any:
        descriptor = self.descriptor(entity)

        def operation(ctx: AuthContext) -> Any:
            values = self._checked_values(descriptor, data)
            if descriptor.created_by_column is not None:
                values[descriptor.created_by_column] = ctx.profile_id
            if set_owner and descriptor.owner_column is not None:
                values[descriptor.owner_column] = ctx.profile_id
            if set_department and descriptor.department_column is not None and ctx.department_id is not None:
                values[descriptor.department_column] = ctx.department_id

            row = descriptor.model(**values)
            with self._storage(descriptor, "create"):
                self.session.add(row)
                self.session.flush()
                self.session.refresh(row)

            audit.record(
                actor_id=str(ctx.profile_id),
                entity_type=descriptor.name,
                entity_id=str(getattr(row, descriptor.primary_key)),
                action="create",
                before=None,
                after=_audit_snapshot(values),
                correlation_id=ctx.correlation_id,
            )
            return row

        requirement = self._requirement(descriptor, ResourceAction.CREATE, permission)
        return self._guarded(descriptor, "create", requirement, operation)

    def update(
        self,
        entity: str,
        record_id: uuid.UUID,
        data: Mapping[str, Any],
        *,
        scope: ScopeOptions,
        permission: PermissionRequirement | None = None,
    ) -> Any:
        descriptor = self.descriptor(entity)

        def operation(ctx: AuthContext) -> Any:
            values = self._checked_values(descriptor, data)
            for protected in (descriptor.primary_key, descriptor.created_by_column):
                if protected is not None and protected in values:
                    raise UnsupportedOperationError(f"Column '{protected}' of '{descriptor.name}' is not writable")

            predicate = self._id_predicate(ctx, descriptor, scope, record_id)
            with self._storage(descriptor, "update"):
                existing = self.session.scalar(select(descriptor.pk).where(predicate).limit(1))
            if existing is None:
                observe_scope_miss(descriptor.name, "update")
                raise NotFoundOrDeniedError(descriptor.name)

            if descriptor.updated_at_column is not None:
                values.setdefault(descriptor.updated_at_column, utcnow())

            with self._storage(descriptor, "update"):
                result = self.session.execute(
                    sa_update(descriptor.model)
                    .where(predicate)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount == 0:
                observe_scope_miss(descriptor.name, "update")
                raise NotFoundOrDeniedError(descriptor.name)

            with self._storage(descriptor, "update"):
                row = self.session.scalars(
                    select(descriptor.model)
                    .where(descriptor.pk == record_id)
                    .execution_options(populate_existing=True)
                ).one()

            audit.record(
                actor_id=str(ctx.profile_id),
                entity_type=descriptor.name,
                entity_id=str(record_id),
                action="update",
                before=None,
                after=_audit_snapshot(values),
                correlation_id=ctx.correlation_id,
            )
            return row

        requirement = self._requirement(descriptor, ResourceAction.UPDATE, permission)
        return self._guarded(descriptor, "update", requirement, operation)

    def delete(
        self,
        entity: str,
        record_id: uuid.UUID,
        *,
        scope: ScopeOptions,
        hard_delete: bool = False,
        permission: PermissionRequirement | None = None,
    ) -> bool:
        descriptor = self.descriptor(entity)

        def operation(ctx: AuthContext) -> bool:
            if not hard_delete and descriptor.soft_delete_column is None:
                raise UnsupportedOperationError(f"Entity '{descriptor.name}' does not support soft delete")

            predicate = self._id_predicate(ctx, descriptor, scope, record_id)
            if hard_delete:
                stmt = sa_delete(descriptor.model).where(predicate)
            else:
                stmt = (
                    sa_update(descriptor.model)
                    .where(predicate)
                    .values({descriptor.soft_delete_column: utcnow()})
                )
            with self._storage(descriptor, "delete"):
                result = self.session.execute(stmt.execution_options(synchronize_session=False))

            deleted = result.rowcount > 0
            if not deleted:
                observe_scope_miss(descriptor.name, "delete")
                return False

            audit.record(
                actor_id=str(ctx.profile_id),
                entity_type=descriptor.name,
                entity_id=str(record_id),
                action="hard_delete" if hard_delete else "soft_delete",
                before=None,
                after=None,
                correlation_id=ctx.correlation_id,
            )
            return True

        requirement = self._requirement(descriptor, ResourceAction.DELETE, permission)
        return self._guarded(descriptor, "delete", requirement, operation)

    def scope_for(self, ctx: AuthContext, entity: str, scope: ScopeOptions) -> ColumnElement[bool] | None:
        """Expose the visibility predicate for domain queries that need a custom shape."""

        return build_scope(ctx, self.descriptor(entity), scope, self.guard.evaluator)

    def _guarded(
        self,
        descriptor: EntityDescriptor[Any],
        operation_name: str,
        requirement: AccessRequirement,
        operation: Callable[[AuthContext], T],
    ) -> T:
        started = time.perf_counter()
        outcome = "error"
        with tracer.start_as_current_span(f"data.gateway.{operation_name}") as span:
            span.set_attribute("entity", descriptor.name)
            span.set_attribute("namespace", descriptor.namespace)
            try:
                result = self.guard.run(requirement, operation)
                outcome = "ok"
                return result
            except DataAccessError as exc:
                outcome = exc.code
                if isinstance(exc, StorageFailureError):
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
            finally:
                observe_gateway_operation(
                    entity=descriptor.name,
                    operation=operation_name,
                    outcome=outcome,
                    duration=time.perf_counter() - started,
                )

    @staticmethod
    def _requirement(
        descriptor: EntityDescriptor[Any],
        action: ResourceAction,
        override: PermissionRequirement | None,
    ) -> AccessRequirement:
        return AccessRequirement(permission=override or PermissionRequirement(descriptor.resource, action.value))

    def _predicate(
        self,
        ctx: AuthContext,
        descriptor: EntityDescriptor[Any],
        scope: ScopeOptions,
        filters: Mapping[str, Any] | None,
        conditions: Sequence[ColumnElement[bool]],
    ) -> ColumnElement[bool] | None:
        filter_conditions = [
            descriptor.column(key) == value for key, value in (filters or {}).items() if value is not None
        ]
        return and_scope(build_scope(ctx, descriptor, scope, self.guard.evaluator), *filter_conditions, *conditions)

    def _scoped_select(
        self,
        ctx: AuthContext,
        descriptor: EntityDescriptor[Any],
        scope: ScopeOptions,
        filters: Mapping[str, Any] | None,
        conditions: Sequence[ColumnElement[bool]],
    ) -> Select[Any]:
        stmt = select(descriptor.model)
        predicate = self._predicate(ctx, descriptor, scope, filters, conditions)
        if predicate is not None:
            stmt = stmt.where(predicate)
        return stmt

    def _id_predicate(
        self,
        ctx: AuthContext,
        descriptor: EntityDescriptor[Any],
        scope: ScopeOptions,
        record_id: uuid.UUID,
    ) -> ColumnElement[bool]:
        id_condition: ColumnElement[bool] = descriptor.pk == record_id
        visibility = build_scope(ctx, descriptor, scope, self.guard.evaluator)
        if visibility is None:
            return id_condition
        return and_(id_condition, visibility)

    def _load_visible(
        self,
        ctx: AuthContext,
        descriptor: EntityDescriptor[Any],
        scope: ScopeOptions,
        record_id: uuid.UUID,
        operation_name: str,
    ) -> Any | None:
        stmt = select(descriptor.model).where(self._id_predicate(ctx, descriptor, scope, record_id)).limit(1)
        with self._storage(descriptor, operation_name):
            return self.session.scalars(stmt).first()

    @staticmethod
    def _checked_values(descriptor: EntityDescriptor[Any], data: Mapping[str, Any]) -> dict[str, Any]:
        values = dict(data)
        for key in values:
            descriptor.column(key)
        return values

    @contextmanager
    def _storage(self, descriptor: EntityDescriptor[Any], operation_name: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error(
                "gateway.storage_failure",
                extra={"entity": descriptor.name, "operation": operation_name, "error": str(exc)},
            )
            raise StorageFailureError(descriptor.name, operation_name) from exc


def _audit_snapshot(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value if isinstance(value, (str, int, float, bool, type(None))) else str(value) for key, value in values.items()}
