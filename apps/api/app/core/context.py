from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    correlation_id: str
    client_ip: str
    user_id: str | None = None


def resolve_client_ip(request: Request) -> str:
    # First hop of X-Forwarded-For wins over the socket peer.
    forwarded_for = request.headers.get("x-forwarded-for", "")
    client_ip = forwarded_for.split(",")[0].strip() if forwarded_for else ""
    if not client_ip and request.client is not None:
        client_ip = request.client.host
    return client_ip or "unknown"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a ``RequestContext`` to ``request.state``; auth fills in ``user_id`` later."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = RequestContext(
            correlation_id=getattr(request.state, "correlation_id", None) or "",
            client_ip=resolve_client_ip(request),
        )
        return await call_next(request)
