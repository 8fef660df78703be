from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from companyos.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("companyos.request")

_DENIED_STATUSES = {401, 403, 404}


def _outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in _DENIED_STATUSES:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "ok"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - started
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": round(duration * 1000, 2),
                    "outcome": "error",
                },
            )
            raise

        duration = time.perf_counter() - started
        # route is only resolved once the router has run
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration)
        logger.info(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
                "outcome": _outcome(response.status_code),
            },
        )
        return response
