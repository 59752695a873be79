"""
OpenTelemetry tracing for stampledger.

Request spans come from the FastAPI instrumentation, query spans from the
SQLAlchemy instrumentation, and authority calls and submissions get their own
spans through `trace_operation`. Everything is a no-op when TRACING_ENABLED
is false.
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

from stampledger.config import settings

ATTRIBUTE_PREFIX = "stampledger."

# Probes scraped every few seconds; tracing them only adds noise.
UNTRACED_URLS = "/health,/metrics"

_instrumented_engines: set[int] = set()


def setup_tracing() -> None:
    """Install a tracer provider that batches spans to the OTLP collector."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace queries on an async engine. Each engine is instrumented once."""
    if not settings.tracing_enabled or id(engine) in _instrumented_engines:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    _instrumented_engines.add(id(engine))


def get_tracer(name: str) -> Tracer:
    return trace.get_tracer(name)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """
    Set attributes under the `stampledger.` namespace.

    None values are skipped; anything that isn't a primitive is stringified
    (UUIDs, enums).
    """
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, (str, int, float, bool)):
            value = str(value)
        span.set_attribute(f"{ATTRIBUTE_PREFIX}{key}", value)


def set_span_error(span: Span, error: BaseException) -> None:
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)


class trace_operation:
    """
    Span around one unit of work; an escaping exception marks the span failed.

    Usage:
        with trace_operation("authority_submission", authority=url) as span:
            proof = await client.submit(url, hash_hex)
            add_span_attributes(span, proof_bytes=len(proof))
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self.tracer = get_tracer("stampledger.operations")
        self._span_cm: Any = None
        self._span: Span | None = None

    def __enter__(self) -> Span:
        self._span_cm = self.tracer.start_as_current_span(
            self.operation_name, record_exception=False, set_status_on_exception=False
        )
        self._span = self._span_cm.__enter__()
        add_span_attributes(self._span, **self.attributes)
        return self._span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_val is not None and self._span is not None:
            set_span_error(self._span, exc_val)
        self._span_cm.__exit__(exc_type, exc_val, exc_tb)
