"""Trace, metric and log instrumentation built on the OpenTelemetry SDK."""

from otelapi.telemetry.context import current_trace_context, extract_context
from otelapi.telemetry.logs import StructuredLogger, get_logger
from otelapi.telemetry.metrics import InstrumentRegistry
from otelapi.telemetry.provider import Telemetry, get_telemetry, init_telemetry
from otelapi.telemetry.tracing import (
    SpanEmitter,
    SpanHandle,
    add_span_attribute,
    add_span_event,
    current_span,
    record_error,
)

__all__ = [
    "InstrumentRegistry",
    "SpanEmitter",
    "SpanHandle",
    "StructuredLogger",
    "Telemetry",
    "add_span_attribute",
    "add_span_event",
    "current_span",
    "current_trace_context",
    "extract_context",
    "get_logger",
    "get_telemetry",
    "init_telemetry",
    "record_error",
]
