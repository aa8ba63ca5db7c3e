from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id


_INBOUND_HEADERS = ("x-correlation-id", "x-request-id")
_MAX_LENGTH = 128
_SAFE_VALUE = re.compile(r"^[A-Za-z0-9._:\-]+$")


def inbound_correlation_id(headers: Headers) -> str | None:
    """First well-formed id from the inbound headers, if any."""
    for header in _INBOUND_HEADERS:
        candidate = headers.get(header, "").strip()
        if candidate and len(candidate) <= _MAX_LENGTH and _SAFE_VALUE.match(candidate):
            return candidate
    return None


def resolve_correlation_id(request: Request) -> str:
    return inbound_correlation_id(request.headers) or str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
