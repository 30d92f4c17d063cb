"""OpenTelemetry tracing configuration."""
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from metering.config import settings


def setup_tracing(app, engine=None) -> None:  # noqa: ANN001
    """
    Export spans over OTLP and instrument FastAPI and SQLAlchemy.

    Does nothing unless ``settings.otel_enabled`` is set; until then
    ``get_tracer`` hands out no-op tracers.

    Args:
        app: FastAPI application instance
        engine: Async engine whose sync engine should be instrumented
    """
    if not settings.otel_enabled:
        return

    provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: settings.otel_service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app)
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    else:
        SQLAlchemyInstrumentor().instrument()


def get_tracer(name: str) -> trace.Tracer:
    """Tracer for custom spans, typically named after the module."""
    return trace.get_tracer(name)
