"""Shared test fixtures for all test modules."""

import logging
from collections.abc import AsyncGenerator, Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from opentelemetry.sdk._logs.export import InMemoryLogExporter
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from otelapi.adapters.storage.database import Database
from otelapi.adapters.storage.pool import ConnectionPool, SQLiteConnector
from otelapi.config import TelemetrySettings
from otelapi.telemetry.logs import ROOT_LOGGER_NAME
from otelapi.telemetry.provider import Telemetry, init_telemetry


@pytest.fixture(autouse=True)
def reset_otelapi_logger() -> Iterator[None]:
    """Undo configure_logging so caplog sees otelapi records in every test."""
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def telemetry_settings() -> TelemetrySettings:
    """Settings with every signal on and runtime gauges off."""
    return TelemetrySettings(
        service_name="otelapi-test",
        service_version="0.0.1",
        environment="test",
        enable_tracing=True,
        enable_metrics=True,
        enable_logging=True,
        enable_runtime_metrics=False,
        shutdown_timeout=5.0,
    )


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def log_exporter() -> InMemoryLogExporter:
    return InMemoryLogExporter()


@pytest.fixture
def telemetry(
    telemetry_settings: TelemetrySettings,
    span_exporter: InMemorySpanExporter,
    metric_reader: InMemoryMetricReader,
    log_exporter: InMemoryLogExporter,
) -> Iterator[Telemetry]:
    """Telemetry bundle exporting to in-memory doubles."""
    bundle = init_telemetry(
        telemetry_settings,
        span_exporter=span_exporter,
        metric_reader=metric_reader,
        log_exporter=log_exporter,
    )
    yield bundle
    bundle.shutdown()


@pytest.fixture
def metric_points(
    metric_reader: InMemoryMetricReader,
) -> Callable[[str], list[Any]]:
    """Factory returning the cumulative data points of one instrument.

    Usage:
        points = metric_points("http_requests_total")
        assert points[0].value == 1
    """

    def _points(name: str) -> list[Any]:
        data = metric_reader.get_metrics_data()
        points: list[Any] = []
        if data is None:
            return points
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name == name:
                        points.extend(metric.data.data_points)
        return points

    return _points


@pytest.fixture
def finished_logs(log_exporter: InMemoryLogExporter) -> Callable[[], list[Any]]:
    """Factory returning the SDK log records exported so far."""

    def _logs() -> list[Any]:
        return [item.log_record for item in log_exporter.get_finished_logs()]

    return _logs


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Provide a temporary SQLite database path."""
    return str(tmp_path / "users.db")


@pytest.fixture
async def database(db_path: str, telemetry: Telemetry) -> AsyncGenerator[Database, None]:
    """Migrated database wired to the test telemetry bundle."""
    pool = ConnectionPool(SQLiteConnector(db_path), max_open=4, max_idle=2)
    db = Database(pool, telemetry.database_metrics)
    await db.migrate()
    yield db
    await db.close()


# === ASGI Test Fixtures ===


@pytest.fixture
def asgi_scope():
    """Factory fixture for creating ASGI scope dicts."""
    from otelapi.adapters.frameworks.asgi import Scope

    def _scope(
        method: str = "GET",
        path: str = "/test",
        headers: list[tuple[bytes, bytes]] | None = None,
    ) -> Scope:
        return {
            "type": "http",
            "method": method,
            "path": path,
            "scheme": "http",
            "query_string": b"",
            "headers": headers or [],
            "client": ("10.0.0.1", 51234),
        }

    return _scope


@pytest.fixture
def asgi_send_capture():
    """Fixture that returns a send callable and a responses list for capture."""

    responses: list[dict[str, object]] = []

    async def send(message: dict[str, object]) -> None:
        """Capture ASGI messages."""
        responses.append(message)

    return send, responses


@pytest.fixture
def asgi_test_client():
    """Factory fixture that creates an httpx.AsyncClient for ASGI testing.

    Exceptions escaping the app are turned into the 500 response Starlette
    sends instead of being re-raised into the test.

    Usage:
        async with asgi_test_client(app) as client:
            response = await client.get("/health")
    """

    def _get_client(app):
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app, raise_app_exceptions=False),
            base_url="http://test",
        )

    return _get_client
