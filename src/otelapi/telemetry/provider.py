"""Construction and ordered shutdown of the trace, metric and log providers.

``init_telemetry`` returns a ``Telemetry`` bundle that is passed explicitly to
the HTTP layer and the data layer. Nothing here touches the global
OpenTelemetry providers unless ``install_global=True``.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics, trace
from opentelemetry import _logs as otel_logs
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import (
    BatchLogRecordProcessor,
    LogExporter,
    SimpleLogRecordProcessor,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)

from otelapi.config import TelemetrySettings
from otelapi.core.errors import TelemetryShutdownError
from otelapi.telemetry.context import get_propagator
from otelapi.telemetry.metrics import (
    METER_NAME,
    DatabaseMetrics,
    InstrumentRegistry,
    RequestMetrics,
    default_views,
    register_runtime_metrics,
)
from otelapi.telemetry.resource import build_resource
from otelapi.telemetry.tracing import TRACER_NAME, SpanEmitter

logger = logging.getLogger(__name__)

ShutdownStep = tuple[str, Callable[[], Any]]


@dataclass
class Telemetry:
    """The providers built at startup and the instruments derived from them.

    A provider whose toggle was off is ``None`` and has no shutdown step.
    """

    config: TelemetrySettings
    resource: Resource
    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    logger_provider: LoggerProvider | None = None
    registry: InstrumentRegistry = field(default_factory=InstrumentRegistry)
    spans: SpanEmitter = field(default_factory=SpanEmitter)
    request_metrics: RequestMetrics = field(init=False)
    database_metrics: DatabaseMetrics = field(init=False)
    _shutdown_steps: list[ShutdownStep] = field(default_factory=list, repr=False)
    _shutdown_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        self.request_metrics = RequestMetrics(self.registry)
        self.database_metrics = DatabaseMetrics(self.registry)

    @property
    def shutdown_steps(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self._shutdown_steps)

    def record_metric(self, name: str, value: int = 1, **attributes: Any) -> None:
        """Increment a custom counter named ``name``."""
        self.registry.record_metric(name, value, **attributes)

    def shutdown(self, timeout: float | None = None) -> None:
        """Flush and close every constructed provider within one deadline.

        Every provider is given its chance to flush even when an earlier one
        failed or timed out. A provider still flushing at the deadline is
        abandoned. Calling this more than once is a no-op.

        Args:
            timeout: Seconds for the whole shutdown; defaults to the configured
                ``shutdown_timeout``.

        Raises:
            TelemetryShutdownError: One or more providers failed to shut down.
        """
        with self._shutdown_lock:
            steps, self._shutdown_steps = self._shutdown_steps, []
        if not steps:
            return
        budget = self.config.shutdown_timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        errors: list[BaseException] = []
        for name, step in steps:
            error = _run_before_deadline(name, step, deadline)
            if error is not None:
                logger.warning("Telemetry %s shutdown failed: %s", name, error)
                errors.append(error)
        if errors:
            raise TelemetryShutdownError(errors)


def _run_before_deadline(
    name: str, step: Callable[[], Any], deadline: float
) -> BaseException | None:
    outcome: list[BaseException] = []

    def target() -> None:
        try:
            step()
        except Exception as exc:
            outcome.append(exc)

    worker = threading.Thread(target=target, name=f"otelapi-shutdown-{name}", daemon=True)
    worker.start()
    worker.join(max(deadline - time.monotonic(), 0.0))
    if worker.is_alive():
        return TimeoutError(f"{name} shutdown did not finish before the deadline")
    return outcome[0] if outcome else None


def _build_exporter(signal: str, factory: Callable[[], Any]) -> Any | None:
    try:
        return factory()
    except Exception:
        logger.warning(
            "Failed to create OTLP %s exporter; %s will not be exported",
            signal,
            signal,
            exc_info=True,
        )
        return None


def _tracer_provider(
    config: TelemetrySettings, resource: Resource, span_exporter: SpanExporter | None
) -> TracerProvider:
    provider = TracerProvider(resource=resource)
    if span_exporter is not None:
        provider.add_span_processor(SimpleSpanProcessor(span_exporter))
        return provider
    exporter = _build_exporter(
        "trace",
        lambda: OTLPSpanExporter(endpoint=config.otlp_endpoint, insecure=config.otlp_insecure),
    )
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def _meter_provider(
    config: TelemetrySettings, resource: Resource, metric_reader: MetricReader | None
) -> MeterProvider:
    readers: list[MetricReader] = []
    if metric_reader is not None:
        readers.append(metric_reader)
    else:
        exporter = _build_exporter(
            "metric",
            lambda: OTLPMetricExporter(
                endpoint=config.otlp_endpoint, insecure=config.otlp_insecure
            ),
        )
        if exporter is not None:
            readers.append(
                PeriodicExportingMetricReader(
                    exporter, export_interval_millis=config.metric_export_interval * 1000
                )
            )
    return MeterProvider(resource=resource, metric_readers=readers, views=default_views())


def _logger_provider(
    config: TelemetrySettings, resource: Resource, log_exporter: LogExporter | None
) -> LoggerProvider:
    provider = LoggerProvider(resource=resource)
    if log_exporter is not None:
        provider.add_log_record_processor(SimpleLogRecordProcessor(log_exporter))
        return provider
    exporter = _build_exporter(
        "log",
        lambda: OTLPLogExporter(endpoint=config.otlp_endpoint, insecure=config.otlp_insecure),
    )
    if exporter is not None:
        provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    return provider


def init_telemetry(
    config: TelemetrySettings,
    *,
    span_exporter: SpanExporter | None = None,
    metric_reader: MetricReader | None = None,
    log_exporter: LogExporter | None = None,
    install_global: bool = False,
) -> Telemetry:
    """Build the telemetry bundle from configuration.

    Each signal is constructed only when its toggle is on. Exporter problems
    never raise: the provider is kept without that exporter and a warning is
    logged, so the service starts with telemetry degraded to local-only.

    Args:
        config: Telemetry settings.
        span_exporter: Exporter used instead of OTLP for spans (tests).
        metric_reader: Reader used instead of the periodic OTLP reader.
        log_exporter: Exporter used instead of OTLP for log records.
        install_global: Also register the providers and propagator as the
            OpenTelemetry globals. Only the process entrypoint should do this.

    Returns:
        The telemetry bundle.
    """
    resource = build_resource(config.service_name, config.service_version, config.environment)
    steps: list[ShutdownStep] = []

    tracer_provider = None
    if config.enable_tracing:
        tracer_provider = _tracer_provider(config, resource, span_exporter)
        steps.append(("tracer provider", tracer_provider.shutdown))

    meter_provider = None
    if config.enable_metrics:
        meter_provider = _meter_provider(config, resource, metric_reader)
        timeout_millis = config.shutdown_timeout * 1000
        steps.append(
            ("meter provider", lambda: meter_provider.shutdown(timeout_millis=timeout_millis))
        )

    logger_provider = None
    if config.enable_logging:
        logger_provider = _logger_provider(config, resource, log_exporter)
        steps.append(("logger provider", logger_provider.shutdown))

    meter = (
        meter_provider.get_meter(METER_NAME, config.service_version)
        if meter_provider is not None
        else None
    )
    tracer = (
        tracer_provider.get_tracer(TRACER_NAME, config.service_version)
        if tracer_provider is not None
        else None
    )
    registry = InstrumentRegistry(meter)
    if meter is not None and config.enable_runtime_metrics:
        register_runtime_metrics(registry)

    telemetry = Telemetry(
        config=config,
        resource=resource,
        tracer_provider=tracer_provider,
        meter_provider=meter_provider,
        logger_provider=logger_provider,
        registry=registry,
        spans=SpanEmitter(tracer),
        _shutdown_steps=steps,
    )

    if install_global:
        if tracer_provider is not None:
            trace.set_tracer_provider(tracer_provider)
        if meter_provider is not None:
            metrics.set_meter_provider(meter_provider)
        if logger_provider is not None:
            otel_logs.set_logger_provider(logger_provider)
        set_global_textmap(get_propagator())
        set_telemetry(telemetry)

    logger.info(
        "OpenTelemetry initialized: service=%s version=%s environment=%s "
        "tracing=%s metrics=%s logging=%s",
        config.service_name,
        config.service_version,
        config.environment,
        config.enable_tracing,
        config.enable_metrics,
        config.enable_logging,
    )
    return telemetry


_telemetry: Telemetry | None = None
_telemetry_lock = threading.Lock()


def set_telemetry(telemetry: Telemetry) -> None:
    """Register the process-wide bundle. It can be set only once."""
    global _telemetry
    with _telemetry_lock:
        if _telemetry is not None and _telemetry is not telemetry:
            raise RuntimeError("telemetry is already initialized")
        _telemetry = telemetry


def get_telemetry() -> Telemetry:
    """Return the bundle registered by the entrypoint."""
    if _telemetry is None:
        raise RuntimeError("telemetry is not initialized; call init_telemetry first")
    return _telemetry
