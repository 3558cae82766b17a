"""
OpenTelemetry spans for entity requests.

Each EntityClient operation runs in a client span tagged with the entity kind
and id, and the HTTP status of a rejected request (412, 428, 409) is recorded
on the span, so a trace shows which write lost a race. Outgoing requests carry
the W3C traceparent header. Without OpenTelemetry installed every helper is a
no-op.

Usage:
    from contact_sync.telemetry import traced

    class EntityClient:
        @traced("update")
        async def update(self, entity_id, patch):
            ...
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

# Try to import OpenTelemetry, but don't require it
try:
    from opentelemetry import trace
    from opentelemetry.trace import SpanKind, Status, StatusCode
    from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore
    Status = None  # type: ignore
    StatusCode = None  # type: ignore
    SpanKind = None  # type: ignore
    TraceContextTextMapPropagator = None  # type: ignore

TRACER_NAME = "contact_sync.client"

ENTITY_KIND_ATTRIBUTE = "contact_sync.entity"
ENTITY_ID_ATTRIBUTE = "contact_sync.entity_id"
STATUS_CODE_ATTRIBUTE = "http.response.status_code"

F = TypeVar("F", bound=Callable[..., Any])


def is_otel_available() -> bool:
    return OTEL_AVAILABLE


def inject_trace_context_to_headers(headers: dict[str, str]) -> dict[str, str]:
    """
    Add traceparent to headers in place when a span is recording.

    Returns:
        The same headers dict
    """
    if not OTEL_AVAILABLE:
        return headers

    try:
        span = trace.get_current_span()
        if span and span.is_recording():
            TraceContextTextMapPropagator().inject(headers)
    except Exception as e:
        logger.debug(f"Failed to inject trace context: {e}")

    return headers


def _entity_attributes(args: tuple[Any, ...]) -> dict[str, str]:
    """Entity kind from the client instance, entity id from the first argument."""
    attributes = {}
    if args:
        kind = getattr(args[0], "entity", None)
        if isinstance(kind, str):
            attributes[ENTITY_KIND_ATTRIBUTE] = kind
    if len(args) > 1 and isinstance(args[1], str):
        attributes[ENTITY_ID_ATTRIBUTE] = args[1]
    return attributes


def traced(operation: str) -> Callable[[F], F]:
    """
    Run an async client method in a span named "<entity>.<operation>".

    Exceptions are recorded on the span and re-raised unchanged. Plain
    functions, and every function when OpenTelemetry is missing, are
    returned as is.
    """

    def decorator(func: F) -> F:
        if not OTEL_AVAILABLE or not inspect.iscoroutinefunction(func):
            return func

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attributes = _entity_attributes(args)
            kind = attributes.get(ENTITY_KIND_ATTRIBUTE, "entity")
            tracer = trace.get_tracer(TRACER_NAME)
            with tracer.start_as_current_span(
                f"{kind}.{operation}", kind=SpanKind.CLIENT, attributes=attributes
            ) as span:
                try:
                    result = await func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    status_code = getattr(e, "status_code", None)
                    if isinstance(status_code, int):
                        span.set_attribute(STATUS_CODE_ATTRIBUTE, status_code)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        return wrapper  # type: ignore

    return decorator
