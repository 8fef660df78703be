from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_
from sqlalchemy.sql.elements import ColumnElement

from companyos.platform.security.context import AuthContext
from companyos.platform.security.policies import PermissionEvaluator, get_permission_evaluator

if TYPE_CHECKING:
    from companyos.platform.data.registry import EntityDescriptor


@dataclass(frozen=True, slots=True)
class ScopeOptions:
    """Per-call visibility switches.

    `admin_bypass` has no default: every call site states whether admins see
    all non-deleted rows. `owner` and `department` select which of the
    entity's declared scoping columns take part; `dual_scope` keeps owner
    scoping even when department scoping already applied.
    """

    admin_bypass: bool
    owner: bool = True
    department: bool = True
    dual_scope: bool = False


def build_scope(
    ctx: AuthContext,
    descriptor: EntityDescriptor[Any],
    options: ScopeOptions,
    evaluator: PermissionEvaluator | None = None,
) -> ColumnElement[bool] | None:
    """Build the visible-rows predicate, or None when nothing restricts the entity."""

    evaluator = evaluator or get_permission_evaluator()
    conditions: list[ColumnElement[bool]] = []

    if descriptor.soft_delete_column is not None:
        conditions.append(descriptor.column(descriptor.soft_delete_column).is_(None))

    if options.admin_bypass and evaluator.is_admin(ctx):
        return combine_conditions(conditions)

    department_applied = False
    if (
        options.department
        and descriptor.department_column is not None
        and ctx.department_id is not None
        and evaluator.is_manager(ctx)
    ):
        conditions.append(descriptor.column(descriptor.department_column) == ctx.department_id)
        department_applied = True

    if options.owner and descriptor.owner_column is not None and (not department_applied or options.dual_scope):
        conditions.append(descriptor.column(descriptor.owner_column) == ctx.profile_id)

    return combine_conditions(conditions)


def combine_conditions(conditions: list[ColumnElement[bool]]) -> ColumnElement[bool] | None:
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return and_(*conditions)


def and_scope(scope: ColumnElement[bool] | None, *conditions: ColumnElement[bool] | None) -> ColumnElement[bool] | None:
    """AND a scope predicate with caller conditions; None entries are skipped."""

    collected = [item for item in (scope, *conditions) if item is not None]
    return combine_conditions(collected)
