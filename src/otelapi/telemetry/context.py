"""Trace-context propagation.

Inbound requests carry W3C ``traceparent``/``tracestate`` and ``baggage``
headers. A missing or malformed header never fails the request; it simply
yields an empty context so the next span starts a fresh trace.
"""

from collections.abc import Iterable, MutableMapping

from opentelemetry import trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.context import Context
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.propagators.textmap import TextMapPropagator
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from otelapi.core.models import INVALID_TRACE_CONTEXT, TraceContext

_PROPAGATOR: TextMapPropagator = CompositePropagator(
    [TraceContextTextMapPropagator(), W3CBaggagePropagator()]
)


def get_propagator() -> TextMapPropagator:
    return _PROPAGATOR


def headers_to_carrier(headers: Iterable[tuple[bytes, bytes]]) -> dict[str, str]:
    """Convert raw ASGI headers into a lower-cased text carrier."""
    carrier: dict[str, str] = {}
    for name, value in headers:
        key = name.decode("latin-1").lower()
        text = value.decode("latin-1")
        carrier[key] = f"{carrier[key]},{text}" if key in carrier else text
    return carrier


def extract_context(headers: Iterable[tuple[bytes, bytes]]) -> Context:
    """Extract the parent context from inbound ASGI headers.

    Args:
        headers: Raw ``(name, value)`` header pairs from the ASGI scope.

    Returns:
        A context holding the remote parent span when the headers carried a
        valid one, otherwise an empty context.
    """
    return _PROPAGATOR.extract(carrier=headers_to_carrier(headers))


def inject_context(carrier: MutableMapping[str, str], context: Context | None = None) -> None:
    """Write the current (or given) context into an outbound header carrier."""
    _PROPAGATOR.inject(carrier, context=context)


def current_trace_context(context: Context | None = None) -> TraceContext:
    """Return the identifiers of the active span.

    Returns ``INVALID_TRACE_CONTEXT`` when no valid span is active, so callers
    can test ``.is_valid`` instead of handling ``None``.
    """
    span = trace.get_current_span(context)
    span_context = span.get_span_context()
    if not span_context.is_valid:
        return INVALID_TRACE_CONTEXT
    parent = getattr(span, "parent", None)
    return TraceContext(
        trace_id=span_context.trace_id,
        span_id=span_context.span_id,
        parent_span_id=parent.span_id if parent is not None else None,
        sampled=span_context.trace_flags.sampled,
    )
