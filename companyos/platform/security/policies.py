from __future__ import annotations

from enum import StrEnum
from threading import Lock
from typing import Protocol

from companyos.platform.security.context import AuthContext, Role


class ResourceAction(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"
    EXPORT = "export"


_BUSINESS_RESOURCES = (
    "contacts",
    "companies",
    "leads",
    "opportunities",
    "tasks",
    "tickets",
    "orders",
    "quotations",
    "shipments",
    "applications",
    "candidates",
    "interviews",
    "files",
    "notifications",
)
_ADMINISTRATION_RESOURCES = ("users", "roles", "permissions", "departments", "teams", "employees")


def _grants(resource_actions: dict[str, tuple[str, ...]]) -> frozenset[str]:
    return frozenset(f"{resource}:{action}" for resource, actions in resource_actions.items() for action in actions)


_CRUD = ("read", "create", "update")

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.SUPERADMIN: _grants(
        {resource: ("manage",) for resource in (*_BUSINESS_RESOURCES, *_ADMINISTRATION_RESOURCES, "sops", "password_vault", "subscriptions")}
    ),
    Role.ADMIN: _grants(
        {
            **{resource: ("manage",) for resource in _BUSINESS_RESOURCES},
            **{resource: ("read",) for resource in _ADMINISTRATION_RESOURCES},
            "sops": ("read",),
            "password_vault": ("read",),
            "subscriptions": ("read",),
        }
    ),
    Role.MANAGER: _grants(
        {
            "contacts": _CRUD,
            "companies": _CRUD,
            "leads": _CRUD,
            "opportunities": _CRUD,
            "tasks": _CRUD,
            "tickets": _CRUD,
            "orders": _CRUD,
            "quotations": _CRUD,
            "shipments": _CRUD,
            "applications": ("read",),
            "candidates": ("read",),
            "interviews": ("read",),
            "notifications": ("read", "update"),
            "files": ("read", "create"),
            "sops": ("read",),
        }
    ),
    Role.EMPLOYEE: _grants(
        {
            "contacts": ("read",),
            "companies": ("read",),
            "leads": _CRUD,
            "opportunities": ("read",),
            "tasks": _CRUD,
            "tickets": _CRUD,
            "orders": ("read",),
            "quotations": ("read",),
            "shipments": ("read",),
            "applications": ("read", "create"),
            "candidates": ("read", "create"),
            "interviews": ("read",),
            "notifications": ("read", "update"),
            "files": ("read", "create"),
            "sops": ("read",),
        }
    ),
    Role.SALES_EXEC: _grants(
        {
            "contacts": _CRUD,
            "companies": _CRUD,
            "leads": _CRUD,
            "opportunities": _CRUD,
            "tasks": _CRUD,
            "notifications": ("read", "update"),
            "files": ("read", "create"),
        }
    ),
    Role.CLIENT_OPS: _grants(
        {
            "contacts": ("read",),
            "companies": ("read",),
            "leads": ("read",),
            "orders": _CRUD,
            "quotations": _CRUD,
            "shipments": _CRUD,
            "tasks": _CRUD,
            "tickets": _CRUD,
            "notifications": ("read", "update"),
            "files": ("read", "create"),
        }
    ),
    Role.CREATIVE: _grants(
        {
            "tasks": ("read", "update"),
            "files": ("read", "create"),
            "notifications": ("read", "update"),
        }
    ),
}

# Rank used for minimum-role requirements. Roles outside the
# employee/manager/admin ladder sit on the employee tier.
ROLE_RANK: dict[Role, int] = {
    Role.CREATIVE: 1,
    Role.EMPLOYEE: 1,
    Role.SALES_EXEC: 1,
    Role.CLIENT_OPS: 1,
    Role.MANAGER: 2,
    Role.ADMIN: 3,
    Role.SUPERADMIN: 4,
}


def role_rank(role: Role) -> int:
    return ROLE_RANK.get(role, 0)


class PermissionEvaluator(Protocol):
    """Pluggable evaluator answering capability and role-tier questions."""

    def has_permission(self, ctx: AuthContext, resource: str, action: str) -> bool:
        ...

    def is_admin(self, ctx: AuthContext) -> bool:
        ...

    def is_manager(self, ctx: AuthContext) -> bool:
        ...


class RolePermissionEvaluator:
    """Role map + direct-grant evaluator with `manage` and wildcard support."""

    def __init__(self, role_permissions: dict[Role, frozenset[str]] | None = None) -> None:
        self._role_permissions = ROLE_PERMISSIONS if role_permissions is None else role_permissions

    def has_permission(self, ctx: AuthContext, resource: str, action: str) -> bool:
        grants = set(ctx.permissions)
        grants.update(self._role_permissions.get(ctx.role, frozenset()))
        required = f"{resource}:{action}"
        return any(self._matches(grant, resource, required) for grant in grants)

    def is_admin(self, ctx: AuthContext) -> bool:
        return ctx.role in {Role.ADMIN, Role.SUPERADMIN}

    def is_manager(self, ctx: AuthContext) -> bool:
        return ctx.role == Role.MANAGER

    @staticmethod
    def _matches(grant: str, resource: str, required: str) -> bool:
        if grant in {"*", required, f"{resource}:{ResourceAction.MANAGE.value}"}:
            return True
        return grant == f"{resource}:*"


_EVALUATOR: PermissionEvaluator = RolePermissionEvaluator()
_EVALUATOR_LOCK = Lock()


def get_permission_evaluator() -> PermissionEvaluator:
    """Get the active permission evaluator."""

    return _EVALUATOR


def set_permission_evaluator(evaluator: PermissionEvaluator) -> None:
    """Set the active permission evaluator."""

    global _EVALUATOR
    with _EVALUATOR_LOCK:
        _EVALUATOR = evaluator
