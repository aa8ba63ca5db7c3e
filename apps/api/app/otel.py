from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from starlette.datastructures import Headers

from app.core.config import get_settings
from app.middleware.correlation_id import inbound_correlation_id

SERVICE_NAME = "ordersync-api"

_provider: TracerProvider | None = None
_exporters_attached = False
_inmemory_exporter: InMemorySpanExporter | None = None


def _provider_for(service_name: str) -> TracerProvider:
    global _provider
    if _provider is None:
        settings = get_settings()
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": service_name,
                    "service.version": settings.app_version,
                    "deployment.environment": settings.app_env,
                }
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str = SERVICE_NAME) -> TracerProvider:
    """Install the tracer provider and attach the exporters configured in settings, once."""
    global _exporters_attached
    provider = _provider_for(service_name)
    if _exporters_attached:
        return provider

    settings = get_settings()
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    global _inmemory_exporter
    if _inmemory_exporter is None:
        _inmemory_exporter = InMemorySpanExporter()
        _provider_for(service_name).add_span_processor(SimpleSpanProcessor(_inmemory_exporter))
    return _inmemory_exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def set_remote_ids(span: trace.Span, **remote_ids: str | None) -> None:
    """Tag a span with the remote record ids an upstream call touched."""
    for key, value in remote_ids.items():
        if value:
            span.set_attribute(f"upstream.{key}", value)


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        correlation_id = inbound_correlation_id(Headers(scope=scope))
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)

    return server_request_hook
