"""
Distributed Tracing with OpenTelemetry.

Traces each batch pass and, when the ops server runs, its HTTP requests and
database queries.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from displex.config import settings


def setup_tracing() -> None:
    """
    Configure OpenTelemetry tracing with OTLP export.

    No-op unless DISPLEX_TRACING_ENABLED is set.
    """
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.application_version,
        }
    )

    provider = TracerProvider(resource=resource)
    otlp_exporter = OTLPSpanExporter(
        endpoint=settings.otlp_endpoint,
        insecure=settings.otlp_insecure,
    )
    provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Instrument the ops FastAPI application. Must be called after app creation."""
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument an async SQLAlchemy engine for query tracing."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> Tracer:
    return trace.get_tracer(name)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Add attributes to a span, stringifying non-primitive values."""
    for key, value in attributes.items():
        if value is not None:
            if isinstance(value, (str, int, float, bool)):
                span.set_attribute(key, value)
            else:
                span.set_attribute(key, str(value))


def set_span_error(span: Span, error: BaseException) -> None:
    """Mark span as error and record exception."""
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)


class trace_operation:
    """
    Context manager for creating traced operations.

    Usage:
        with trace_operation("token_maintenance", tokens=len(tokens)) as span:
            # ... perform pass
            span.set_attribute("renewed", 3)
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self._cm: Any = None

    def __enter__(self) -> Span:
        """Start span and make it current."""
        tracer = get_tracer("displex.operations")
        self._cm = tracer.start_as_current_span(
            self.operation_name, record_exception=False, set_status_on_exception=False
        )
        span = self._cm.__enter__()
        add_span_attributes(span, **self.attributes)
        return span

    def __exit__(self, exc_type: Any, exc_val: BaseException | None, exc_tb: Any) -> None:
        """End span and record any errors."""
        if exc_val is not None:
            set_span_error(trace.get_current_span(), exc_val)
        self._cm.__exit__(exc_type, exc_val, exc_tb)
