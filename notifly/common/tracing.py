"""OpenTelemetry setup helpers used by each FastAPI service."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from notifly.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider exporting spans for one notifly process."""

    resource = Resource.create({"service.name": service_name, "service.namespace": "notifly"})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation; health and metrics probes are not traced."""

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def get_tracer():
    return trace.get_tracer("notifly")
