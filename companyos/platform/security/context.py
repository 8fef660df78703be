from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"
    SALES_EXEC = "sales_exec"
    CLIENT_OPS = "client_ops"
    CREATIVE = "creative"

    @classmethod
    def parse(cls, value: str | None) -> Role | None:
        if value is None:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Per-request identity used by the guard and the visibility filter."""

    user_id: str
    profile_id: uuid.UUID
    role: Role
    department_id: uuid.UUID | None = None
    permissions: frozenset[str] = frozenset()
    correlation_id: str | None = None


AuthContextResolver = Callable[[], "AuthContext | None"]

auth_context_var: ContextVar[AuthContext | None] = ContextVar("auth_context", default=None)


def get_auth_context() -> AuthContext | None:
    return auth_context_var.get()


@contextmanager
def bind_auth_context(ctx: AuthContext | None) -> Iterator[AuthContext | None]:
    token = auth_context_var.set(ctx)
    try:
        yield ctx
    finally:
        auth_context_var.reset(token)


def static_resolver(ctx: AuthContext | None) -> AuthContextResolver:
    """Resolver that always answers with an already-resolved context."""

    def resolve() -> AuthContext | None:
        return ctx

    return resolve
