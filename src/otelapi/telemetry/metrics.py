"""Metric instruments and the recording protocols built on them.

All instruments are created through an ``InstrumentRegistry``. Creation is
idempotent per name, and an instrument that cannot be created is replaced by
an inert handle after a single warning, so recording call sites never need to
check whether metrics are available.
"""

import gc
import logging
import os
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

import psutil
from opentelemetry.metrics import CallbackOptions, Meter, Observation
from opentelemetry.sdk.metrics.view import ExplicitBucketHistogramAggregation, View

from otelapi.core.attributes import coerce_attributes
from otelapi.core.ports import PoolStatsSource
from otelapi.core.status import get_status_class

logger = logging.getLogger(__name__)

METER_NAME = "otelapi"

# Duration buckets in seconds
DEFAULT_HISTOGRAM_BUCKETS: tuple[float, ...] = (
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
)

# Payload buckets in bytes
SIZE_BUCKETS: tuple[float, ...] = (
    100.0,
    1_000.0,
    10_000.0,
    100_000.0,
    1_000_000.0,
    10_000_000.0,
)

DB_SYSTEM = "sqlite"


def default_views() -> list[View]:
    """Histogram bucket layouts for the built-in duration and size instruments."""
    durations = ExplicitBucketHistogramAggregation(boundaries=DEFAULT_HISTOGRAM_BUCKETS)
    sizes = ExplicitBucketHistogramAggregation(boundaries=SIZE_BUCKETS)
    return [
        View(instrument_name="http_request_duration_seconds", aggregation=durations),
        View(instrument_name="db.query.duration", aggregation=durations),
        View(instrument_name="db.health_check.duration", aggregation=durations),
        View(instrument_name="http_request_size_bytes", aggregation=sizes),
        View(instrument_name="http_response_size_bytes", aggregation=sizes),
    ]


class _InstrumentHandle:
    __slots__ = ("name", "_instrument")

    def __init__(self, name: str, instrument: Any | None) -> None:
        self.name = name
        self._instrument = instrument

    @property
    def enabled(self) -> bool:
        return self._instrument is not None


class CounterHandle(_InstrumentHandle):
    """Monotonic integer counter."""

    __slots__ = ()

    def add(self, value: int = 1, attributes: Mapping[str, Any] | None = None) -> None:
        if self._instrument is None:
            return
        self._instrument.add(value, coerce_attributes(attributes))


class UpDownCounterHandle(_InstrumentHandle):
    """Integer counter that may decrease."""

    __slots__ = ()

    def add(self, value: int, attributes: Mapping[str, Any] | None = None) -> None:
        if self._instrument is None:
            return
        self._instrument.add(value, coerce_attributes(attributes))


class HistogramHandle(_InstrumentHandle):
    """Float distribution of observations."""

    __slots__ = ()

    def record(self, value: float, attributes: Mapping[str, Any] | None = None) -> None:
        if self._instrument is None:
            return
        self._instrument.record(value, coerce_attributes(attributes))


class InstrumentRegistry:
    """Process-wide, idempotent instrument factory over an optional meter.

    Args:
        meter: Meter to create instruments on. ``None`` (metrics disabled)
            makes every handle inert.
    """

    def __init__(self, meter: Meter | None = None) -> None:
        self._meter = meter
        self._handles: dict[tuple[str, str], _InstrumentHandle] = {}
        self._gauges: set[str] = set()
        self._lock = threading.Lock()

    @property
    def meter(self) -> Meter | None:
        return self._meter

    @property
    def enabled(self) -> bool:
        return self._meter is not None

    def _register(
        self,
        kind: str,
        name: str,
        handle_cls: type[_InstrumentHandle],
        factory: Callable[[Meter], Any],
    ) -> Any:
        with self._lock:
            existing = self._handles.get((kind, name))
            if existing is not None:
                return existing
            instrument = None
            if self._meter is not None:
                try:
                    instrument = factory(self._meter)
                except Exception:
                    logger.warning(
                        "Failed to create %s instrument %s; recordings will be dropped",
                        kind,
                        name,
                        exc_info=True,
                    )
            handle = handle_cls(name, instrument)
            self._handles[(kind, name)] = handle
            return handle

    def counter(self, name: str, description: str = "", unit: str = "") -> CounterHandle:
        return self._register(
            "counter",
            name,
            CounterHandle,
            lambda meter: meter.create_counter(name, unit=unit, description=description),
        )

    def up_down_counter(
        self, name: str, description: str = "", unit: str = ""
    ) -> UpDownCounterHandle:
        return self._register(
            "up_down_counter",
            name,
            UpDownCounterHandle,
            lambda meter: meter.create_up_down_counter(name, unit=unit, description=description),
        )

    def histogram(self, name: str, description: str = "", unit: str = "") -> HistogramHandle:
        return self._register(
            "histogram",
            name,
            HistogramHandle,
            lambda meter: meter.create_histogram(name, unit=unit, description=description),
        )

    def observable_gauge(
        self,
        name: str,
        callback: Callable[[CallbackOptions], Iterable[Observation]],
        description: str = "",
        unit: str = "",
    ) -> bool:
        """Register an asynchronous gauge once.

        Returns:
            True when the gauge is (already) registered on a live meter.
        """
        with self._lock:
            if name in self._gauges:
                return True
            if self._meter is None:
                return False
            try:
                self._meter.create_observable_gauge(
                    name, callbacks=[callback], unit=unit, description=description
                )
            except Exception:
                logger.warning("Failed to create observable gauge %s", name, exc_info=True)
                return False
            self._gauges.add(name)
            return True

    def record_metric(self, name: str, value: int = 1, **attributes: Any) -> None:
        """Increment a free-form counter, registering it on first use."""
        self.counter(name, f"Custom metric: {name}").add(value, attributes)


class RequestMetrics:
    """HTTP request instruments and the per-request recording protocol."""

    def __init__(self, registry: InstrumentRegistry) -> None:
        self.requests = registry.counter(
            "http_requests_total", "Total number of HTTP requests"
        )
        self.duration = registry.histogram(
            "http_request_duration_seconds", "HTTP request duration in seconds", "s"
        )
        self.request_size = registry.histogram(
            "http_request_size_bytes", "HTTP request size in bytes", "By"
        )
        self.response_size = registry.histogram(
            "http_response_size_bytes", "HTTP response size in bytes", "By"
        )
        self.active_requests = registry.up_down_counter(
            "http_active_requests", "Number of active HTTP requests"
        )

    def request_started(self, method: str, route: str, request_size: int | None = None) -> None:
        """Count the request as active and record its body size when known."""
        attributes = {"method": method, "route": route}
        self.active_requests.add(1, attributes)
        if request_size is not None and request_size > 0:
            self.request_size.record(request_size, attributes)

    def request_finished(
        self,
        method: str,
        route: str,
        status_code: int,
        duration: float,
        response_size: int | None = None,
    ) -> None:
        """Release the active slot and record the request outcome.

        Args:
            method: HTTP method, same value passed to ``request_started``.
            route: Route template, same value passed to ``request_started``.
            status_code: Final response status.
            duration: Wall-clock seconds from entry to exit.
            response_size: Response size in bytes, if determinable.
        """
        self.active_requests.add(-1, {"method": method, "route": route})
        attributes = {
            "method": method,
            "route": route,
            "status_code": str(status_code),
            "status_class": get_status_class(status_code),
        }
        self.requests.add(1, attributes)
        self.duration.record(duration, attributes)
        if response_size is not None and response_size > 0:
            self.response_size.record(response_size, attributes)


class DatabaseMetrics:
    """Query, connection and health-check instruments for the data layer."""

    def __init__(self, registry: InstrumentRegistry) -> None:
        self._registry = registry
        self.query_duration = registry.histogram(
            "db.query.duration", "Database query duration in seconds", "s"
        )
        self.query_count = registry.counter("db.query.count", "Total number of database queries")
        self.query_errors = registry.counter(
            "db.query.errors", "Total number of database query errors"
        )
        self.connections_active = registry.up_down_counter(
            "db.connections.active", "Number of active database connections"
        )
        self.connection_errors = registry.counter(
            "db.connection.errors", "Total number of database connection errors"
        )
        self.health_check_duration = registry.histogram(
            "db.health_check.duration", "Database health check duration in seconds", "s"
        )

    def record_query(
        self,
        operation: str,
        table: str,
        duration: float,
        error: BaseException | None = None,
    ) -> None:
        attributes = {"db.system": DB_SYSTEM, "db.operation": operation, "db.table": table}
        self.query_duration.record(duration, attributes)
        self.query_count.add(1, attributes)
        if error is not None:
            self.query_errors.add(1, {**attributes, "error.type": "query_failed"})

    def record_health_check(self, duration: float, error: BaseException | None = None) -> None:
        self.health_check_duration.record(
            duration, {"db.system": DB_SYSTEM, "db.health.status": error is None}
        )
        if error is not None:
            self.connection_errors.add(
                1, {"db.system": DB_SYSTEM, "error.type": "health_check_failed"}
            )

    def record_pool_snapshot(self, open_connections: int, idle: int) -> None:
        """Push one monitoring tick into the active-connections counter.

        The counter receives ``+open`` tagged ``active`` and ``-idle`` tagged
        ``idle``. Consumers read the running totals, not individual adds.
        """
        self.connections_active.add(
            open_connections, {"db.system": DB_SYSTEM, "connection.type": "active"}
        )
        self.connections_active.add(-idle, {"db.system": DB_SYSTEM, "connection.type": "idle"})

    def register_pool_gauges(self, source: PoolStatsSource) -> bool:
        """Expose live pool statistics as observable gauges.

        Returns:
            True if every gauge was registered.
        """
        base = {"db.system": DB_SYSTEM}
        readings: Sequence[tuple[str, str, str, str]] = (
            ("db.sql.connection.open", "open_connections", "Open database connections", ""),
            ("db.sql.connection.in_use", "in_use", "Database connections in use", ""),
            ("db.sql.connection.idle", "idle", "Idle database connections", ""),
            (
                "db.sql.connection.wait_count",
                "wait_count",
                "Total waits for a database connection",
                "",
            ),
            (
                "db.sql.connection.wait_duration",
                "wait_duration",
                "Total time waited for a database connection",
                "s",
            ),
        )
        registered = True
        for name, field_name, description, unit in readings:
            registered &= self._registry.observable_gauge(
                name, _observe(source, field_name, base), description, unit
            )
        return registered


def _observe(
    source: PoolStatsSource, field_name: str, attributes: Mapping[str, Any]
) -> Callable[[CallbackOptions], Iterable[Observation]]:
    def callback(options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(getattr(source.stats(), field_name), dict(attributes))

    return callback


def register_runtime_metrics(registry: InstrumentRegistry) -> bool:
    """Register process runtime gauges backed by psutil and ``gc``."""
    process = psutil.Process(os.getpid())
    # first call primes psutil's CPU accounting and always returns 0.0
    process.cpu_percent(interval=None)

    def memory_rss(options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(process.memory_info().rss)

    def cpu_utilization(options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(process.cpu_percent(interval=None) / 100.0)

    def thread_count(options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(threading.active_count())

    def gc_count(options: CallbackOptions) -> Iterable[Observation]:
        for generation, count in enumerate(gc.get_count()):
            yield Observation(count, {"generation": str(generation)})

    registered = registry.observable_gauge(
        "process.runtime.cpython.memory.rss", memory_rss, "Resident set size", "By"
    )
    registered &= registry.observable_gauge(
        "process.runtime.cpython.cpu.utilization",
        cpu_utilization,
        "Process CPU utilization since the previous collection",
        "1",
    )
    registered &= registry.observable_gauge(
        "process.runtime.cpython.thread_count", thread_count, "Active Python threads"
    )
    registered &= registry.observable_gauge(
        "process.runtime.cpython.gc_count", gc_count, "Objects tracked per GC generation"
    )
    return registered
