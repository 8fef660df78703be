from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

authz_guard_denied_total = Counter(
    "authz_guard_denied_total",
    "Total guard denials by reason",
    ["reason"],
)

data_gateway_operations_total = Counter(
    "data_gateway_operations_total",
    "Total gateway operations by entity, operation and outcome",
    ["entity", "operation", "outcome"],
)

data_gateway_operation_duration_seconds = Histogram(
    "data_gateway_operation_duration_seconds",
    "Gateway operation duration in seconds",
    ["entity", "operation"],
)

rls_scope_misses_total = Counter(
    "rls_scope_misses_total",
    "Total id lookups that matched no visible row",
    ["entity", "operation"],
)

stitch_relation_fetches_total = Counter(
    "stitch_relation_fetches_total",
    "Total batched relation fetches issued by the stitcher",
    ["relation"],
)

notification_enqueued_total = Counter(
    "notification_enqueued_total",
    "Total notification intents by type and enqueue outcome",
    ["notification_type", "outcome"],
)

notification_deliveries_total = Counter(
    "notification_deliveries_total",
    "Total notification delivery attempts by resulting status",
    ["status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_guard_denied(reason: str) -> None:
    authz_guard_denied_total.labels(reason=reason).inc()


def observe_gateway_operation(entity: str, operation: str, outcome: str, duration: float) -> None:
    data_gateway_operations_total.labels(entity=entity, operation=operation, outcome=outcome).inc()
    data_gateway_operation_duration_seconds.labels(entity=entity, operation=operation).observe(duration)


def observe_scope_miss(entity: str, operation: str) -> None:
    rls_scope_misses_total.labels(entity=entity, operation=operation).inc()


def observe_relation_fetch(relation: str) -> None:
    stitch_relation_fetches_total.labels(relation=relation).inc()


def observe_notification_enqueued(notification_type: str, outcome: str) -> None:
    notification_enqueued_total.labels(notification_type=notification_type, outcome=outcome).inc()


def observe_notification_delivery(status: str, count: int = 1) -> None:
    if count > 0:
        notification_deliveries_total.labels(status=status).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
