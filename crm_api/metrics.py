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

crm_lead_status_changes_total = Counter(
    "crm_lead_status_changes_total",
    "Total lead status transitions",
    ["old_status", "new_status"],
)

crm_lead_conversions_total = Counter(
    "crm_lead_conversions_total",
    "Total leads converted to contacts",
)

crm_deal_stage_transitions_total = Counter(
    "crm_deal_stage_transitions_total",
    "Total deal stage transitions",
    ["old_stage", "new_stage"],
)

audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Total audit log writes that failed and were dropped",
    ["action"],
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
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_status_change(old_status: str | None, new_status: str) -> None:
    crm_lead_status_changes_total.labels(old_status=old_status or "none", new_status=new_status).inc()


def observe_lead_conversion() -> None:
    crm_lead_conversions_total.inc()


def observe_deal_stage_transition(old_stage: str | None, new_stage: str) -> None:
    crm_deal_stage_transitions_total.labels(old_stage=old_stage or "none", new_stage=new_stage).inc()


def observe_audit_write_failure(action: str) -> None:
    audit_write_failures_total.labels(action=action).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
