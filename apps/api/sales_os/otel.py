"""Tracing setup.

One ``TracerProvider`` is installed per process. Exporters are attached by
``configure_tracing`` from settings; tests attach an in-memory exporter to the
same provider instead.
"""

from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from sales_os.core.config import Settings
from sales_os.core.context import collection_from_path
from sales_os.middleware.correlation_id import CORRELATION_HEADER, resolve_correlation_id


_provider: TracerProvider | None = None
_exporters_attached = False


def tracer_provider(service_name: str, service_version: str = "0.1.0") -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create({"service.name": service_name, "service.version": service_version})
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings) -> TracerProvider | None:
    global _exporters_attached

    if not settings.otel_enabled:
        return None

    provider = tracer_provider(settings.otel_service_name, settings.app_version)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "sales-os") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def server_request_hook(span: Any, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    raw = headers.get(CORRELATION_HEADER.encode("latin-1"), b"").decode("latin-1")
    # invalid ids are replaced downstream, so only a usable one is recorded here
    if raw and resolve_correlation_id(raw) == raw:
        span.set_attribute("correlation_id", raw)
    collection = collection_from_path(scope.get("path", ""))
    if collection:
        span.set_attribute("sales_os.collection", collection)
