"""OpenTelemetry tracing for billing flows."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

_TRACER_NAME = "subscription_service"

_tracer: Optional[trace.Tracer] = None
_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    enable_console_export: bool = False,
) -> trace.Tracer:
    """Install the global tracer provider.

    Args:
        service_name: Name reported on every span
        service_version: Version reported on every span
        environment: Deployment environment label
        enable_console_export: Print finished spans to stdout

    Returns:
        The configured tracer
    """
    global _tracer, _provider

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    })
    _provider = TracerProvider(resource=resource)

    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())

    _tracer = trace.get_tracer(service_name, service_version)
    logger.info(
        "Tracing initialized",
        extra={"service": service_name, "version": service_version},
    )
    return _tracer


def get_tracer() -> trace.Tracer:
    """Return the configured tracer, or the global (possibly no-op) one."""
    if _tracer is None:
        return trace.get_tracer(_TRACER_NAME)
    return _tracer


def _current_context():
    span = trace.get_current_span()
    context = span.get_span_context() if span else None
    if context is not None and context.is_valid:
        return context
    return None


def get_trace_id() -> Optional[str]:
    """Current trace id as 32 hex chars, if a span is active."""
    context = _current_context()
    return format(context.trace_id, "032x") if context else None


def get_span_id() -> Optional[str]:
    """Current span id as 16 hex chars, if a span is active."""
    context = _current_context()
    return format(context.span_id, "016x") if context else None


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Run a block inside a new child span.

    Exceptions escaping the block are recorded on the span and re-raised.
    """
    with get_tracer().start_as_current_span(
        name,
        kind=kind,
        attributes=attributes or {},
        record_exception=True,
        set_status_on_exception=True,
    ) as span:
        yield span


def add_span_attributes(attributes: dict) -> None:
    """Attach attributes to the current span, skipping None values."""
    span = trace.get_current_span()
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def record_exception(exception: Exception) -> None:
    """Mark the current span as failed with ``exception``."""
    span = trace.get_current_span()
    span.record_exception(exception)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans and stop the provider."""
    if _provider is not None:
        _provider.shutdown()
