from __future__ import annotations

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from showroom.core.config import get_settings


_provider: TracerProvider | None = None
_exporting = False


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        _provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel() -> TracerProvider:
    """Install the tracer provider, exporting over OTLP when an endpoint is configured."""

    global _exporting

    settings = get_settings()
    provider = _get_or_create_provider(settings.otel_service_name)
    if settings.otel_exporter_endpoint and not _exporting:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
        _exporting = True
    return provider


def setup_inmemory_otel(service_name: str = "showroom-api") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)
