"""Python logging handlers for the local JSON stream and the OTLP log backend.

``configure_logging`` installs both sinks on the ``otelapi`` logger tree:

    from otelapi.adapters.logging import configure_logging

    configure_logging("debug", logger_provider=telemetry.logger_provider)
"""

import logging
import sys
from typing import IO

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags

from otelapi.core.attributes import coerce_attributes
from otelapi.telemetry.logs import (
    ROOT_LOGGER_NAME,
    TRACE_FIELDS,
    StructuredJsonFormatter,
    TraceContextFilter,
    parse_level,
    record_fields,
)

# Marker attribute on handlers installed by configure_logging
_INSTALLED_MARKER = "_otelapi_installed"

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _span_context_from_fields(fields: dict[str, object]) -> SpanContext | None:
    trace_id = fields.get("trace_id")
    span_id = fields.get("span_id")
    if not isinstance(trace_id, str) or not isinstance(span_id, str):
        return None
    try:
        span_context = SpanContext(
            trace_id=int(trace_id, 16),
            span_id=int(span_id, 16),
            is_remote=False,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )
    except ValueError:
        return None
    return span_context if span_context.is_valid else None


class OtelLogBridgeHandler(LoggingHandler):
    """Forward standard-library records to an OpenTelemetry ``LoggerProvider``.

    Structured fields become record attributes. ``trace_id``/``span_id`` are
    not sent as attributes: the record is emitted under a span context built
    from them, which fills the OTLP record's correlation slot. Severity comes
    from the SDK mapping (WARNING to WARN, CRITICAL to FATAL).

    With no provider the handler drops every record.
    """

    def __init__(
        self,
        logger_provider: LoggerProvider | None = None,
        level: int = logging.NOTSET,
    ) -> None:
        self._bridge_provider = logger_provider
        if logger_provider is None:
            # LoggingHandler would fall back to the global provider
            logging.Handler.__init__(self, level=level)
        else:
            super().__init__(level=level, logger_provider=logger_provider)

    @property
    def enabled(self) -> bool:
        return self._bridge_provider is not None

    def emit(self, record: logging.LogRecord) -> None:
        if self._bridge_provider is None:
            return
        try:
            fields = record_fields(record)
            span_context = _span_context_from_fields(fields)
            attributes = coerce_attributes(
                {key: value for key, value in fields.items() if key not in TRACE_FIELDS}
            )
            # flatten fields into a copy so the SDK reads them as attributes
            flat = logging.makeLogRecord(record.__dict__)
            for key in (*TRACE_FIELDS, "fields"):
                flat.__dict__.pop(key, None)
            flat.__dict__.update(
                {
                    (f"fields.{key}" if key in _RECORD_ATTRS else key): value
                    for key, value in attributes.items()
                }
            )

            token = None
            if span_context is not None:
                token = otel_context.attach(
                    trace.set_span_in_context(NonRecordingSpan(span_context))
                )
            try:
                super().emit(flat)
            finally:
                if token is not None:
                    otel_context.detach(token)
        except Exception:
            self.handleError(record)

    def flush(self) -> None:
        if self._bridge_provider is None:
            return
        super().flush()


def _remove_installed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _INSTALLED_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def configure_logging(
    level: int | str = "info",
    logger_provider: LoggerProvider | None = None,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Install the local JSON sink and, if given a provider, the OTLP bridge.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        level: Minimum severity (``debug``, ``info``, ``warn``, ``error``).
        logger_provider: Provider for remote delivery; ``None`` keeps logging
            local only.
        stream: Destination of the JSON stream, stdout by default.

    Returns:
        The configured ``otelapi`` root logger.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    _remove_installed_handlers(logger)
    logger.setLevel(parse_level(level))
    logger.propagate = False

    local = logging.StreamHandler(stream if stream is not None else sys.stdout)
    local.setFormatter(StructuredJsonFormatter())
    local.addFilter(TraceContextFilter())
    setattr(local, _INSTALLED_MARKER, True)
    logger.addHandler(local)

    if logger_provider is not None:
        bridge = OtelLogBridgeHandler(logger_provider=logger_provider)
        bridge.addFilter(TraceContextFilter())
        setattr(bridge, _INSTALLED_MARKER, True)
        logger.addHandler(bridge)

    return logger
