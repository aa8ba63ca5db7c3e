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

upstream_requests_total = Counter(
    "upstream_requests_total",
    "Total outbound CRM/billing requests by operation and outcome",
    ["operation", "outcome"],
)

upstream_request_duration_seconds = Histogram(
    "upstream_request_duration_seconds",
    "Outbound CRM/billing request duration in seconds",
    ["operation"],
)

checkout_transitions_total = Counter(
    "checkout_transitions_total",
    "Checkout session status transitions by target status",
    ["to_status"],
)

signup_link_validations_total = Counter(
    "signup_link_validations_total",
    "Signup link validations by outcome",
    ["outcome"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook deliveries by provider and outcome",
    ["provider", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_upstream_request(operation: str, outcome: str, duration: float) -> None:
    upstream_requests_total.labels(operation=operation, outcome=outcome).inc()
    upstream_request_duration_seconds.labels(operation=operation).observe(duration)


def observe_checkout_transition(to_status: str) -> None:
    checkout_transitions_total.labels(to_status=to_status).inc()


def observe_signup_link_validation(outcome: str) -> None:
    signup_link_validations_total.labels(outcome=outcome).inc()


def observe_webhook_event(provider: str, outcome: str) -> None:
    webhook_events_total.labels(provider=provider, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
