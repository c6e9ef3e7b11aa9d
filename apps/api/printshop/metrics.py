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

payment_webhook_events_total = Counter(
    "payment_webhook_events_total",
    "Payment processor webhook events by type and outcome",
    ["event_type", "outcome"],
)

code_redemptions_total = Counter(
    "code_redemptions_total",
    "Code redemption attempts by code type and outcome",
    ["code_type", "outcome"],
)

processor_calls_total = Counter(
    "processor_calls_total",
    "Outbound payment processor calls by operation and outcome",
    ["operation", "outcome"],
)

processor_call_duration_seconds = Histogram(
    "processor_call_duration_seconds",
    "Outbound payment processor call duration in seconds",
    ["operation"],
)

reconciliation_issues_total = Counter(
    "reconciliation_issues_total",
    "Recorded divergences between the processor and the local store",
    ["operation"],
)

entitlement_sweep_rows_total = Counter(
    "entitlement_sweep_rows_total",
    "Subscriptions transitioned by periodic sweeps",
    ["sweep"],
)

rls_denied_reads_count = Counter(
    "rls_denied_reads_count",
    "Total denied reads by RLS",
    ["resource"],
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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_webhook_event(event_type: str, outcome: str) -> None:
    payment_webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def observe_code_redemption(code_type: str, outcome: str) -> None:
    code_redemptions_total.labels(code_type=code_type, outcome=outcome).inc()


def observe_processor_call(operation: str, outcome: str, duration: float) -> None:
    processor_calls_total.labels(operation=operation, outcome=outcome).inc()
    processor_call_duration_seconds.labels(operation=operation).observe(duration)


def observe_reconciliation_issue(operation: str) -> None:
    reconciliation_issues_total.labels(operation=operation).inc()


def observe_sweep(sweep: str, count: int) -> None:
    if count > 0:
        entitlement_sweep_rows_total.labels(sweep=sweep).inc(count)


def observe_rls_denied_read(resource: str) -> None:
    rls_denied_reads_count.labels(resource=resource).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
