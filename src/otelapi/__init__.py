"""otelapi - a CRUD REST service with trace-correlated logs, metrics and spans.

Example:
    ```python
    from otelapi import create_app, init_telemetry
    from otelapi.config import get_settings

    settings = get_settings()
    telemetry = init_telemetry(settings.telemetry)
    app = create_app(settings, telemetry)
    ```
"""

from otelapi.adapters.logging import OtelLogBridgeHandler, configure_logging
from otelapi.app import create_app
from otelapi.telemetry import (
    SpanEmitter,
    StructuredLogger,
    Telemetry,
    current_trace_context,
    get_logger,
    init_telemetry,
)

__all__ = [
    "OtelLogBridgeHandler",
    "SpanEmitter",
    "StructuredLogger",
    "Telemetry",
    "configure_logging",
    "create_app",
    "current_trace_context",
    "get_logger",
    "init_telemetry",
]
