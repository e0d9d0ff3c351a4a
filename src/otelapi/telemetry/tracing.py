"""Span emission with a guaranteed single ``end()`` and a derived status.

``SpanEmitter.start_span`` is a context manager: the span is ended on every
exit path, including exceptions and task cancellation. The handle of the
innermost open span is kept in a context variable so request handlers can
annotate it without threading the handle through every call.
"""

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, Tracer

from otelapi.core.attributes import coerce_attribute, coerce_attributes
from otelapi.core.models import TraceContext
from otelapi.core.status import describe_outcome, is_error_outcome
from otelapi.telemetry.context import current_trace_context

TRACER_NAME = "otelapi"

_current_handle: ContextVar["SpanHandle | None"] = ContextVar(
    "otelapi_current_span", default=None
)


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class SpanHandle:
    """Mutable view over one open span.

    Every mutator is ignored once the span has ended.
    """

    def __init__(self, span: Span) -> None:
        self._span = span
        self._errors: list[str] = []
        self._status_code: int | None = None
        self._explicit_status: Status | None = None
        self._ended = False

    @property
    def span(self) -> Span:
        return self._span

    @property
    def context(self) -> TraceContext:
        return current_trace_context(trace.set_span_in_context(self._span))

    @property
    def otel_context(self) -> Context:
        """OpenTelemetry context with this span active, for child spans."""
        return trace.set_span_in_context(self._span)

    @property
    def errors(self) -> tuple[str, ...]:
        return tuple(self._errors)

    @property
    def status_code(self) -> int | None:
        return self._status_code

    @property
    def is_ended(self) -> bool:
        return self._ended

    @property
    def is_error(self) -> bool:
        return is_error_outcome(self._errors, self._status_code)

    def set_attribute(self, key: str, value: Any) -> None:
        if self._ended:
            return
        self._span.set_attribute(key, coerce_attribute(value))

    def set_attributes(self, attributes: Mapping[str, Any] | None = None, **extra: Any) -> None:
        if self._ended:
            return
        self._span.set_attributes(coerce_attributes(attributes, **extra))

    def add_event(self, name: str, attributes: Mapping[str, Any] | None = None, **extra: Any) -> None:
        if self._ended:
            return
        self._span.add_event(name, coerce_attributes(attributes, **extra))

    def record_error(self, exc: BaseException, description: str | None = None) -> None:
        """Attach an exception to the span and count it toward the status.

        Args:
            exc: The failure to record as a span event.
            description: Text used in the status description instead of
                ``str(exc)``.
        """
        if self._ended:
            return
        self._errors.append(description or _error_text(exc))
        self._span.record_exception(exc)
        self._span.set_attribute("error", True)
        if description:
            self._span.set_attribute("error.description", description)

    def set_status_code(self, status_code: int) -> None:
        """Record the terminal HTTP-equivalent status of the operation."""
        if self._ended:
            return
        self._status_code = status_code

    def set_status(self, ok: bool, description: str = "") -> None:
        """Request an explicit status.

        Recorded errors and 4xx/5xx status codes still force ``ERROR``.
        """
        if self._ended:
            return
        if ok:
            self._explicit_status = Status(StatusCode.OK)
        else:
            self._explicit_status = Status(StatusCode.ERROR, description or None)

    def _final_status(self) -> Status:
        if is_error_outcome(self._errors, self._status_code):
            return Status(StatusCode.ERROR, describe_outcome(self._errors, self._status_code))
        if self._explicit_status is not None:
            return self._explicit_status
        return Status(StatusCode.OK)

    def end(self) -> None:
        """Finalize status and end the span; later calls do nothing."""
        if self._ended:
            return
        status = self._final_status()
        if status.status_code is StatusCode.ERROR:
            self._span.set_attribute("error", True)
            if self._errors:
                self._span.set_attribute("error.message", "; ".join(self._errors))
        self._span.set_status(status)
        self._span.end()
        self._ended = True


class SpanEmitter:
    """Opens spans on a tracer and hands out ``SpanHandle`` objects.

    With no tracer (tracing disabled) spans come from the no-op tracer, so
    call sites never branch on whether tracing is on.
    """

    def __init__(self, tracer: Tracer | None = None) -> None:
        self._tracer: Tracer = tracer if tracer is not None else trace.NoOpTracer()

    @property
    def tracer(self) -> Tracer:
        return self._tracer

    @contextmanager
    def start_span(
        self,
        name: str,
        *,
        parent: Context | None = None,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
    ) -> Iterator[SpanHandle]:
        """Open a span as the current span for the enclosed block.

        Args:
            name: Span name.
            parent: Explicit parent context; defaults to the active context.
            kind: OpenTelemetry span kind.
            attributes: Initial attributes, coerced to supported types.

        Yields:
            The handle of the new span. An exception escaping the block is
            recorded on the span before it ends and is then re-raised.
        """
        with self._tracer.start_as_current_span(
            name,
            context=parent,
            kind=kind,
            attributes=coerce_attributes(attributes),
            end_on_exit=False,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            handle = SpanHandle(span)
            token = _current_handle.set(handle)
            try:
                yield handle
            except Exception as exc:
                handle.record_error(exc)
                raise
            finally:
                _current_handle.reset(token)
                handle.end()


def current_span() -> SpanHandle | None:
    """Handle of the innermost span opened by a ``SpanEmitter``, if any."""
    return _current_handle.get()


def add_span_attribute(key: str, value: Any) -> None:
    handle = _current_handle.get()
    if handle is not None:
        handle.set_attribute(key, value)


def add_span_event(name: str, **attributes: Any) -> None:
    handle = _current_handle.get()
    if handle is not None:
        handle.add_event(name, attributes)


def record_error(exc: BaseException, description: str | None = None) -> None:
    """Record ``exc`` on the current span; a no-op outside any span."""
    handle = _current_handle.get()
    if handle is not None:
        handle.record_error(exc, description)
