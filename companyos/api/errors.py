from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

from companyos.context import get_correlation_id
from companyos.platform.security.errors import (
    DataAccessError,
    NotFoundOrDeniedError,
    StorageFailureError,
    UnauthenticatedError,
    UnauthorizedError,
    UnsupportedOperationError,
)


logger = logging.getLogger("companyos.request")

_STATUS_BY_ERROR: tuple[tuple[type[DataAccessError], int], ...] = (
    (UnauthenticatedError, status.HTTP_401_UNAUTHORIZED),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (NotFoundOrDeniedError, status.HTTP_404_NOT_FOUND),
    (UnsupportedOperationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StorageFailureError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=asdict(payload))


def status_for(exc: DataAccessError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def data_access_error_response(request: Request, exc: DataAccessError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        # engine text stays in the logs
        logger.error(
            "http.data_access_error",
            extra={"path": request.url.path, "status_code": status_code, "error": getattr(exc, "detail", str(exc))},
        )
        return error_response(
            request,
            status_code=status_code,
            code=exc.code,
            message="Internal storage error",
        )

    message = exc.message if isinstance(exc, UnauthorizedError) else str(exc)
    details = {"entity": exc.entity} if isinstance(exc, NotFoundOrDeniedError) else None
    return error_response(request, status_code=status_code, code=exc.code, message=message, details=details)


async def data_access_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, DataAccessError)
    return data_access_error_response(request, exc)
