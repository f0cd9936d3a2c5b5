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

sales_stage_transitions_total = Counter(
    "sales_stage_transitions_total",
    "Opportunity stage transitions recorded in stage history",
    ["from_stage", "to_stage"],
)

sales_access_denied_total = Counter(
    "sales_access_denied_total",
    "Mutations rejected by the access policy",
    ["resource", "action"],
)

sales_row_store_failures_total = Counter(
    "sales_row_store_failures_total",
    "Row store operations that failed",
    ["backend", "operation"],
)

sales_stage_fallback_total = Counter(
    "sales_stage_fallback_total",
    "Stored rows whose stage value was unrecognized and read as the default stage",
    ["table"],
)


_ID_RE = re.compile(r"/(rec[0-9A-Za-z]{14}|[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _ID_RE.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(from_stage: str, to_stage: str) -> None:
    sales_stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage).inc()


def observe_access_denied(resource: str, action: str) -> None:
    sales_access_denied_total.labels(resource=resource, action=action).inc()


def observe_row_store_failure(backend: str, operation: str) -> None:
    sales_row_store_failures_total.labels(backend=backend, operation=operation).inc()


def observe_stage_fallback(table: str) -> None:
    sales_stage_fallback_total.labels(table=table).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
