"""Application factory wiring telemetry, storage and routes together."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from otelapi.adapters.frameworks.asgi import TelemetryMiddleware
from otelapi.adapters.frameworks.fastapi import (
    create_api_router,
    create_health_router,
    create_metrics_router,
    create_users_router,
    register_error_handlers,
)
from otelapi.adapters.storage.database import Database
from otelapi.adapters.storage.users import UserRepository
from otelapi.config import Settings, get_settings
from otelapi.core.errors import TelemetryShutdownError
from otelapi.runtime.monitor import ConnectionMonitor
from otelapi.telemetry.logs import get_logger
from otelapi.telemetry.provider import Telemetry, get_telemetry

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    telemetry: Telemetry | None = None,
    database: Database | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    The interactive API docs are served outside production only. The
    lifespan migrates the schema, registers the pool gauges and starts the
    connection monitor. On shutdown it stops the monitor, closes the pool
    and drains telemetry within the configured deadline, in that order.

    Args:
        settings: Configuration; loaded from the environment when omitted.
        telemetry: Telemetry bundle; the process-wide one when omitted.
        database: Database handle; built from ``settings.database`` when
            omitted.

    Returns:
        The configured application.
    """
    settings = settings if settings is not None else get_settings()
    telemetry = telemetry if telemetry is not None else get_telemetry()
    if database is None:
        database = Database.from_settings(settings.database, telemetry.database_metrics)
    repository = UserRepository(database, telemetry.spans)
    monitor = ConnectionMonitor(database)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await database.migrate()
        database.register_stats_metrics()
        monitor.start(settings.database.monitor_interval)
        logger.info(
            "Server starting",
            host=settings.app.host,
            port=settings.app.port,
            environment=settings.app.environment,
        )
        try:
            yield
        finally:
            logger.info("Shutting down server")
            await monitor.stop()
            await database.close()
            try:
                await asyncio.to_thread(telemetry.shutdown)
            except TelemetryShutdownError as exc:
                logger.with_error(exc).error("Error shutting down telemetry")
            logger.info("Server exited")

    docs: dict[str, Any] = {}
    if settings.app.is_production:
        docs = {"docs_url": None, "redoc_url": None, "openapi_url": None}

    app = FastAPI(
        title="OpenTelemetry Example API",
        version=settings.telemetry.service_version,
        lifespan=lifespan,
        **docs,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # added last so it wraps CORS and sees preflight requests too
    app.add_middleware(TelemetryMiddleware, telemetry=telemetry)
    register_error_handlers(app)

    app.include_router(create_health_router(database))
    app.include_router(create_metrics_router(database))
    app.include_router(create_api_router(settings.telemetry.service_version))
    app.include_router(create_users_router(repository))

    app.state.settings = settings
    app.state.telemetry = telemetry
    app.state.database = database
    app.state.monitor = monitor
    return app
