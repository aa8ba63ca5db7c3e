from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import SignupValidationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.upstream.client import UpstreamConfig


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_domain_event_types = [
    "checkout.payment_completed",
    "checkout.contact_synced",
    "checkout.sales_order_created",
    "checkout.agreement_status_changed",
    "signup_link.issued",
    "signup_link.validated",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_domain_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    checkout_session_id = payload.get("checkout_session_id") if isinstance(payload, dict) else None
    logger.info(
        "domain_event",
        extra={"event_name": event.name, "checkout_session_id": checkout_session_id},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    # Fails fast in production when the CRM URL or token is missing.
    UpstreamConfig.from_settings(get_settings())
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _domain_event_types:
            event_bus.subscribe(event_name, _on_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="OrderSync API", version="0.1.0", lifespan=lifespan)
app.add_middleware(SignupValidationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
