"""Step definitions for the lifecycle features.

Steps are synchronous; async work runs through ``run_async`` so each step
owns its event loop, the same way the scenario would run in a script.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import pytest
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from pytest_bdd import given, parsers, then, when

from otelapi.adapters.storage.database import Database
from otelapi.app import create_app
from otelapi.config import AppSettings, DatabaseSettings, Settings, TelemetrySettings
from otelapi.core.errors import TelemetryShutdownError
from otelapi.runtime.monitor import STOPPED, ConnectionMonitor
from otelapi.telemetry.provider import Telemetry, init_telemetry


def run_async(coro: Any) -> Any:
    """Run a coroutine in a new event loop (for sync step helpers)."""
    return asyncio.run(coro)


@dataclass
class LifecycleScenarioContext:
    """Shared state between steps in a lifecycle scenario."""

    settings: TelemetrySettings | None = None
    reader: InMemoryMetricReader = field(default_factory=InMemoryMetricReader)
    telemetry: Telemetry | None = None
    db_path: str = ""
    monitor: ConnectionMonitor | None = None
    response: httpx.Response | None = None

    def points(self, name: str) -> list[Any]:
        data = self.reader.get_metrics_data()
        if data is None:
            return []
        return [
            point
            for resource_metrics in data.resource_metrics
            for scope_metrics in resource_metrics.scope_metrics
            for metric in scope_metrics.metrics
            if metric.name == name
            for point in metric.data.data_points
        ]


@pytest.fixture
def ctx(tmp_path: Path):
    """Fresh scenario context for each test."""
    context = LifecycleScenarioContext(db_path=str(tmp_path / "scenario.db"))
    yield context
    if context.telemetry is not None:
        context.telemetry.shutdown()


def _toggle(value: str) -> bool:
    return value == "on"


# === Telemetry construction ===


@given(
    parsers.parse(
        "telemetry settings with tracing {tracing}, metrics {metrics} and logging {logging}"
    )
)
def given_settings(ctx: LifecycleScenarioContext, tracing: str, metrics: str, logging: str) -> None:
    ctx.settings = TelemetrySettings(
        service_name="lifecycle-test",
        enable_tracing=_toggle(tracing),
        enable_metrics=_toggle(metrics),
        enable_logging=_toggle(logging),
        enable_runtime_metrics=False,
    )


@when("telemetry is initialized")
def when_initialized(ctx: LifecycleScenarioContext) -> None:
    from opentelemetry.sdk._logs.export import InMemoryLogExporter
    from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

    assert ctx.settings is not None
    ctx.telemetry = init_telemetry(
        ctx.settings,
        span_exporter=InMemorySpanExporter(),
        metric_reader=ctx.reader,
        log_exporter=InMemoryLogExporter(),
    )


@then("no tracer, meter or logger provider is constructed")
def then_no_providers(ctx: LifecycleScenarioContext) -> None:
    assert ctx.telemetry is not None
    assert ctx.telemetry.tracer_provider is None
    assert ctx.telemetry.meter_provider is None
    assert ctx.telemetry.logger_provider is None


@then("only the meter provider is constructed")
def then_only_meter(ctx: LifecycleScenarioContext) -> None:
    assert ctx.telemetry is not None
    assert ctx.telemetry.tracer_provider is None
    assert ctx.telemetry.logger_provider is None
    assert ctx.telemetry.meter_provider is not None


@then(parsers.parse('the shutdown order is "{order}"'))
def then_shutdown_order(ctx: LifecycleScenarioContext, order: str) -> None:
    assert ctx.telemetry is not None
    assert ctx.telemetry.shutdown_steps == tuple(order.split(", "))


@then("shutdown completes without error")
def then_shutdown_ok(ctx: LifecycleScenarioContext) -> None:
    assert ctx.telemetry is not None
    try:
        ctx.telemetry.shutdown()
    except TelemetryShutdownError as exc:
        pytest.fail(f"shutdown raised {exc}")
    assert ctx.telemetry.shutdown_steps == ()


@when(parsers.parse('a histogram observation of {value:f} is recorded for "{name}"'))
def when_histogram_recorded(ctx: LifecycleScenarioContext, value: float, name: str) -> None:
    assert ctx.telemetry is not None
    ctx.telemetry.registry.histogram(name, unit="s").record(value)


@then(
    parsers.parse('the metric reader returns {count:d} observation of "{name}" summing {total:f}')
)
def then_histogram_read_back(
    ctx: LifecycleScenarioContext, count: int, name: str, total: float
) -> None:
    (point,) = ctx.points(name)
    assert point.count == count
    assert point.sum == pytest.approx(total)


# === Pool monitoring ===


@given("a migrated database with in-memory metrics")
def given_database(ctx: LifecycleScenarioContext) -> None:
    ctx.settings = TelemetrySettings(
        service_name="lifecycle-test",
        enable_tracing=False,
        enable_logging=False,
        enable_runtime_metrics=False,
    )
    ctx.telemetry = init_telemetry(ctx.settings, metric_reader=ctx.reader)

    async def migrate() -> None:
        database = Database.from_settings(
            DatabaseSettings(path=ctx.db_path), ctx.telemetry.database_metrics
        )
        await database.migrate()
        await database.close()

    run_async(migrate())


@when(parsers.parse("the pool monitor runs every {interval:d} ms and is stopped after {deadline:d} ms"))
def when_monitor_runs(ctx: LifecycleScenarioContext, interval: int, deadline: int) -> None:
    assert ctx.telemetry is not None

    async def scenario() -> None:
        database = Database.from_settings(
            DatabaseSettings(path=ctx.db_path), ctx.telemetry.database_metrics
        )
        await database.health()
        ctx.monitor = ConnectionMonitor(database)
        stop = asyncio.Event()
        ctx.monitor.start(interval / 1000, stop)
        await asyncio.sleep(deadline / 1000)
        stop.set()
        await asyncio.wait_for(ctx.monitor.wait(), timeout=1)
        await database.close()

    run_async(scenario())


@then(parsers.parse("at least {count:d} pool snapshot was recorded"))
def then_snapshots(ctx: LifecycleScenarioContext, count: int) -> None:
    assert ctx.monitor is not None
    assert ctx.monitor.ticks >= count


@then("the monitor is stopped")
def then_monitor_stopped(ctx: LifecycleScenarioContext) -> None:
    assert ctx.monitor is not None
    assert ctx.monitor.state == STOPPED


@then("the active connections counter has active and idle readings")
def then_active_connections(ctx: LifecycleScenarioContext) -> None:
    types = {point.attributes["connection.type"] for point in ctx.points("db.connections.active")}
    assert types == {"active", "idle"}


# === Metrics endpoint ===


@when("the metrics endpoint is requested after the database is closed")
def when_metrics_after_close(ctx: LifecycleScenarioContext) -> None:
    assert ctx.telemetry is not None and ctx.settings is not None
    settings = Settings(
        app=AppSettings(environment="test"),
        telemetry=ctx.settings,
        database=DatabaseSettings(path=ctx.db_path),
    )

    async def scenario() -> httpx.Response:
        app = create_app(settings, ctx.telemetry)
        async with app.router.lifespan_context(app):
            await app.state.database.close()
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                return await client.get("/metrics")

    ctx.response = run_async(scenario())


@then(parsers.parse("the response status is {status:d}"))
def then_status(ctx: LifecycleScenarioContext, status: int) -> None:
    assert ctx.response is not None
    assert ctx.response.status_code == status


@then("the response reports the database as unhealthy with an error")
def then_unhealthy(ctx: LifecycleScenarioContext) -> None:
    assert ctx.response is not None
    database = ctx.response.json()["database"]
    assert database["healthy"] is False
    assert database["error"]
