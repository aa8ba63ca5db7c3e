from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

# Probe and scrape traffic is logged at DEBUG.
_QUIET_PATHS = {"/health", "/metrics"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured ``http.request`` record and one HTTP metrics sample per request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _finish(request, method, path, 500, started, failed=True)
            raise

        _finish(request, method, path, response.status_code, started)
        return response


def _finish(request: Request, method: str, path: str, status_code: int, started: float, *, failed: bool = False) -> None:
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    observe_http_request(method=method, path=path, status=status_code, duration=duration_ms / 1000)

    context = getattr(request.state, "context", None)
    fields = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "client_ip": getattr(context, "client_ip", None),
        "user_id": getattr(context, "user_id", None),
    }
    if failed:
        logger.error("http.error", exc_info=True, extra=fields)
    elif status_code >= 500:
        logger.warning("http.request", extra=fields)
    elif path in _QUIET_PATHS:
        logger.debug("http.request", extra=fields)
    else:
        logger.info("http.request", extra=fields)
