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

crm_ingestion_messages_total = Counter(
    "crm_ingestion_messages_total",
    "Total ingested channel messages by outcome",
    ["channel", "outcome"],
)

crm_ingestion_duration_seconds = Histogram(
    "crm_ingestion_duration_seconds",
    "Ingestion message handling duration in seconds",
    ["channel"],
)

crm_client_events_appended_total = Counter(
    "crm_client_events_appended_total",
    "Total client events appended to the timeline",
    ["event_type"],
)

crm_search_projections_total = Counter(
    "crm_search_projections_total",
    "Total search document writes by operation",
    ["operation"],
)

crm_import_rows_total = Counter(
    "crm_import_rows_total",
    "Total CSV import rows by status",
    ["status"],
)

crm_domain_events_total = Counter(
    "crm_domain_events_total",
    "Total in-process domain events by type",
    ["event_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


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


def observe_ingestion(channel: str, outcome: str, duration: float | None = None) -> None:
    crm_ingestion_messages_total.labels(channel=channel, outcome=outcome).inc()
    if duration is not None:
        crm_ingestion_duration_seconds.labels(channel=channel).observe(duration)


def observe_client_event_appended(event_type: str) -> None:
    crm_client_events_appended_total.labels(event_type=event_type).inc()


def observe_search_projection(operation: str, count: int = 1) -> None:
    if count > 0:
        crm_search_projections_total.labels(operation=operation).inc(count)


def observe_import_row(status: str) -> None:
    crm_import_rows_total.labels(status=status).inc()


def observe_domain_event(event_type: str) -> None:
    crm_domain_events_total.labels(event_type=event_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
