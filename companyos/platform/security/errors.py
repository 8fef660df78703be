from __future__ import annotations


class DataAccessError(Exception):
    """Base error for the authorization-enforcing data access layer."""

    code = "data_access_error"


class AuthorizationError(DataAccessError):
    """Base error for identity and permission failures."""

    code = "authorization_error"


class UnauthenticatedError(AuthorizationError):
    """Raised when no identity can be resolved for the caller."""

    code = "unauthenticated"

    def __init__(self, message: str = "Query requires authentication") -> None:
        super().__init__(message)


class UnauthorizedError(AuthorizationError):
    """Raised when a role, permission or custom check refuses the caller."""

    code = "unauthorized"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Unauthorized query: {message}")


class NotFoundOrDeniedError(DataAccessError):
    """Raised when a row is missing or outside the caller's visibility scope.

    The two cases are deliberately indistinguishable.
    """

    code = "not_found_or_denied"

    def __init__(self, entity: str, message: str = "Record not found or access denied") -> None:
        self.entity = entity
        super().__init__(message)


class UnsupportedOperationError(DataAccessError):
    """Raised for operations the entity's configuration cannot support."""

    code = "unsupported_operation"


class StorageFailureError(DataAccessError):
    code = "storage_failure"

    def __init__(self, entity: str, operation: str) -> None:
        self.entity = entity
        self.operation = operation
        super().__init__(f"Storage failure during {operation} on '{entity}'")

    @property
    def detail(self) -> str:
        cause = self.__cause__
        return f"{self}: {cause}" if cause is not None else str(self)


class NotificationFailureError(DataAccessError):
    """Delivery or enqueue failure of a notification intent. Logged, never propagated."""

    code = "notification_failure"
