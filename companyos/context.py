from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
auth_user_id_var: ContextVar[str | None] = ContextVar("auth_user_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_auth_user_id(value: str | None) -> Token[str | None]:
    """Bind the resolved caller for log records emitted later in the same context."""
    return auth_user_id_var.set(value)


def reset_auth_user_id(token: Token[str | None]) -> None:
    auth_user_id_var.reset(token)


def get_auth_user_id() -> str | None:
    return auth_user_id_var.get()
