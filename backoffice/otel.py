from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from backoffice import __version__
from backoffice.core.config import Settings


_provider: TracerProvider | None = None
_exporting = False


def tracer_provider(service_name: str) -> TracerProvider:
    """Install the process-wide provider once; later calls reuse it."""
    global _provider

    if _provider is None:
        resource = Resource.create({"service.name": service_name, "service.version": __version__})
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def _span_processors(settings: Settings) -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    if settings.otel_exporter_otlp_endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_otel(settings: Settings) -> TracerProvider | None:
    global _exporting

    if not settings.otel_enabled:
        return None

    provider = tracer_provider(settings.otel_service_name)
    if not _exporting:
        for processor in _span_processors(settings):
            provider.add_span_processor(processor)
        _exporting = True
    return provider


def setup_inmemory_otel(service_name: str = "backoffice-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def correlation_request_hook(span: Any, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id" and value:
            span.set_attribute("correlation_id", value.decode("latin-1"))
            return
