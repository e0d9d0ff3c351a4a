"""Structured, trace-correlated logging on top of the standard library.

Call sites use ``StructuredLogger`` (``get_logger``) and pass fields as
keyword arguments. Fields travel on the ``LogRecord`` as a single ``fields``
attribute; the JSON formatter flattens them into the output document and the
OpenTelemetry bridge turns them into record attributes.
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from otelapi.core.attributes import coerce_attributes
from otelapi.telemetry.context import current_trace_context

ROOT_LOGGER_NAME = "otelapi"

# Fields filled from the active span; they populate the trace-correlation slot
# of remote records instead of being sent as attributes.
TRACE_FIELDS = ("trace_id", "span_id")

_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

_LEVEL_NAMES: dict[int, str] = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}


def parse_level(level: int | str) -> int:
    """Resolve ``"debug"``/``"info"``/``"warn"``/``"error"``/``"fatal"`` or a
    numeric level. Unknown names resolve to INFO."""
    if isinstance(level, int):
        return level
    return _LEVELS.get(level.strip().lower(), logging.INFO)


def level_name(levelno: int) -> str:
    return _LEVEL_NAMES.get(levelno, logging.getLevelName(levelno).lower())


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Structured fields carried by a record, trace ids included.

    ``trace_id``/``span_id`` come only from the record attributes stamped by
    ``TraceContextFilter``, so every sink reports the same identifiers.
    """
    fields: dict[str, Any] = {
        key: value
        for key, value in (getattr(record, "fields", None) or {}).items()
        if key not in TRACE_FIELDS
    }
    for key in TRACE_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            fields[key] = value
    return fields


class TraceContextFilter(logging.Filter):
    """Stamp ``trace_id``/``span_id`` of the active span onto each record.

    Records produced while no valid span is active are left without either
    attribute. Identifiers already present on a record are kept.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "trace_id", None) is not None:
            return True
        trace_context = current_trace_context()
        if trace_context.is_valid:
            record.trace_id = trace_context.trace_id_hex
            record.span_id = trace_context.span_id_hex
        return True


class StructuredJsonFormatter(JsonFormatter):
    """JSON document per record with ``timestamp``, ``level`` and ``message``.

    Bound and call-site fields are merged at the top level of the document.
    """

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return created.isoformat(timespec="milliseconds")

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        fields = log_record.pop("fields", None) or {}
        for key, value in fields.items():
            if key not in TRACE_FIELDS:
                log_record.setdefault(key, value)
        log_record["level"] = level_name(record.levelno)


class StructuredLogger:
    """Leveled logger with bound key-value fields.

    Args:
        logger: Underlying standard-library logger.
        fields: Fields attached to every record from this logger.
    """

    def __init__(self, logger: logging.Logger, fields: Mapping[str, Any] | None = None) -> None:
        self._logger = logger
        self._fields: dict[str, Any] = dict(fields or {})

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self._fields)

    def is_enabled_for(self, level: int | str) -> bool:
        return self._logger.isEnabledFor(parse_level(level))

    def log(self, level: int | str, message: str, **fields: Any) -> None:
        """Emit ``message`` at ``level`` with bound and call-site fields.

        ``trace_id``/``span_id`` of the active span are added by the
        handlers' ``TraceContextFilter``. Values passed for them here are
        dropped.
        """
        self._log(parse_level(level), message, fields)

    def _log(self, levelno: int, message: str, fields: dict[str, Any]) -> None:
        # every public method calls this directly, so the caller is 3 frames up
        if not self._logger.isEnabledFor(levelno):
            return
        merged = {**self._fields, **fields}
        exc_info = merged.pop("exc_info", None)
        for key in TRACE_FIELDS:
            merged.pop(key, None)
        self._logger.log(
            levelno,
            message,
            exc_info=exc_info,
            extra={"fields": coerce_attributes(merged)},
            stacklevel=3,
        )

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, fields)

    def warn(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, fields)

    warning = warn

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields)

    def with_fields(self, **fields: Any) -> "StructuredLogger":
        """Child logger with additional bound fields."""
        return StructuredLogger(self._logger, {**self._fields, **fields})

    def with_error(self, exc: BaseException) -> "StructuredLogger":
        """Child logger carrying ``error`` (message) and ``error.type``."""
        return self.with_fields(
            **{"error": str(exc) or type(exc).__name__, "error.type": type(exc).__name__}
        )


def get_logger(name: str = ROOT_LOGGER_NAME) -> StructuredLogger:
    """Process-wide accessor for a structured logger under ``otelapi``."""
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return StructuredLogger(logging.getLogger(name))
