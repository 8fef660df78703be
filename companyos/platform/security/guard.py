from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from companyos import audit
from companyos.metrics import observe_guard_denied
from companyos.platform.security.context import AuthContext, AuthContextResolver, Role, get_auth_context
from companyos.platform.security.errors import UnauthenticatedError, UnauthorizedError
from companyos.platform.security.policies import PermissionEvaluator, get_permission_evaluator, role_rank


logger = logging.getLogger("companyos.security.guard")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class PermissionRequirement:
    resource: str
    action: str

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass(frozen=True, slots=True)
class AccessRequirement:
    """What a caller must satisfy before a guarded operation may run."""

    permission: PermissionRequirement | None = None
    min_role: Role | None = None
    predicate: Callable[[AuthContext], bool] | None = None
    message: str | None = None


class AuthGuard:
    """Fail-closed wrapper: every check passes before the operation is invoked."""

    def __init__(
        self,
        resolver: AuthContextResolver = get_auth_context,
        evaluator: PermissionEvaluator | None = None,
    ) -> None:
        self._resolver = resolver
        self._evaluator = evaluator

    @property
    def evaluator(self) -> PermissionEvaluator:
        return self._evaluator or get_permission_evaluator()

    def resolve(self) -> AuthContext:
        ctx = self._resolver()
        if ctx is None:
            observe_guard_denied("unauthenticated")
            logger.info("guard.denied", extra={"reason": "unauthenticated"})
            raise UnauthenticatedError()
        return ctx

    def run(self, requirement: AccessRequirement, operation: Callable[[AuthContext], T]) -> T:
        ctx = self.resolve()

        if requirement.min_role is not None and role_rank(ctx.role) < role_rank(requirement.min_role):
            self._deny(ctx, requirement, "role", f"Requires role: {requirement.min_role.value}")

        if requirement.permission is not None:
            permission = requirement.permission
            if not self.evaluator.has_permission(ctx, permission.resource, permission.action):
                self._deny(ctx, requirement, "permission", f"Requires permission: {permission}")

        if requirement.predicate is not None and not requirement.predicate(ctx):
            self._deny(ctx, requirement, "predicate", "Custom authorization check failed")

        return operation(ctx)

    def _deny(self, ctx: AuthContext, requirement: AccessRequirement, reason: str, default_message: str) -> None:
        message = requirement.message or default_message
        observe_guard_denied(reason)
        logger.info(
            "guard.denied",
            extra={"reason": reason, "profile_id": str(ctx.profile_id), "role": ctx.role.value},
        )
        audit.record(
            actor_id=str(ctx.profile_id),
            entity_type="security.guard",
            entity_id=str(requirement.permission) if requirement.permission else reason,
            action="guard.denied",
            before=None,
            after={"reason": reason, "message": message, "role": ctx.role.value},
            correlation_id=ctx.correlation_id,
        )
        raise UnauthorizedError(message)


def guard(requirement: AccessRequirement, operation: Callable[[AuthContext], T]) -> T:
    """Run `operation` under `requirement` using the ambient auth context."""

    return AuthGuard().run(requirement, operation)
