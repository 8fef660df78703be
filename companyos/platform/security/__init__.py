from companyos.platform.security.context import AuthContext, Role, bind_auth_context, get_auth_context, static_resolver
from companyos.platform.security.errors import (
    AuthorizationError,
    DataAccessError,
    NotFoundOrDeniedError,
    NotificationFailureError,
    StorageFailureError,
    UnauthenticatedError,
    UnauthorizedError,
    UnsupportedOperationError,
)
from companyos.platform.security.policies import (
    PermissionEvaluator,
    ResourceAction,
    RolePermissionEvaluator,
    get_permission_evaluator,
    set_permission_evaluator,
)
from companyos.platform.security.guard import AccessRequirement, AuthGuard, PermissionRequirement, guard
from companyos.platform.security.rls import ScopeOptions, and_scope, build_scope

__all__ = [
    "AuthContext",
    "Role",
    "bind_auth_context",
    "get_auth_context",
    "static_resolver",
    "AuthorizationError",
    "DataAccessError",
    "NotFoundOrDeniedError",
    "NotificationFailureError",
    "StorageFailureError",
    "UnauthenticatedError",
    "UnauthorizedError",
    "UnsupportedOperationError",
    "PermissionEvaluator",
    "ResourceAction",
    "RolePermissionEvaluator",
    "get_permission_evaluator",
    "set_permission_evaluator",
    "AccessRequirement",
    "AuthGuard",
    "PermissionRequirement",
    "guard",
    "ScopeOptions",
    "and_scope",
    "build_scope",
]
