"""Instrumented database handle: pool, schema, health and metrics."""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from otelapi.adapters.storage.pool import ConnectionPool, SQLiteConnector
from otelapi.config import DatabaseSettings
from otelapi.core.models import PoolSnapshot, format_duration
from otelapi.telemetry.logs import get_logger
from otelapi.telemetry.metrics import DatabaseMetrics, InstrumentRegistry

logger = get_logger(__name__)

USERS_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    bio TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at);
"""


class Database:
    """Connection pool wrapped with query, connection and health metrics.

    Args:
        pool: Pool the repositories draw connections from.
        metrics: Database instruments; inert instruments when omitted.
    """

    def __init__(self, pool: ConnectionPool, metrics: DatabaseMetrics | None = None) -> None:
        self._pool = pool
        self._metrics = metrics if metrics is not None else DatabaseMetrics(InstrumentRegistry())

    @classmethod
    def from_settings(
        cls, settings: DatabaseSettings, metrics: DatabaseMetrics | None = None
    ) -> "Database":
        pool = ConnectionPool(
            SQLiteConnector(settings.path),
            max_open=settings.max_open_conns,
            max_idle=settings.max_idle_conns,
            max_lifetime=settings.conn_max_lifetime,
            max_idle_time=settings.conn_max_idle_time,
            acquire_timeout=settings.acquire_timeout,
        )
        return cls(pool, metrics)

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def metrics(self) -> DatabaseMetrics:
        return self._metrics

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._pool.connection() as conn:
            yield conn

    async def migrate(self) -> None:
        """Create the schema if it does not exist yet."""
        async with self._pool.connection() as conn:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.executescript(USERS_SCHEMA)
            await conn.commit()
        logger.info("Database schema ready")

    async def health(self) -> None:
        """Ping the database, recording the check duration and any failure.

        Raises:
            Exception: Whatever the ping raised, e.g. ``PoolClosedError``.
        """
        start = time.perf_counter()
        error: BaseException | None = None
        try:
            await self._pool.ping()
        except Exception as exc:
            error = exc
            raise
        finally:
            self._metrics.record_health_check(time.perf_counter() - start, error)

    def record_query_metrics(
        self,
        operation: str,
        table: str,
        duration: float,
        error: BaseException | None = None,
    ) -> None:
        """Record one query: count, duration and, on failure, an error.

        Args:
            operation: SQL verb (SELECT, INSERT, UPDATE, DELETE).
            table: Table the statement targets.
            duration: Seconds the statement took.
            error: The failure, if the statement failed.
        """
        self._metrics.record_query(operation, table, duration, error)

    def record_connection_metrics(self) -> PoolSnapshot:
        """Push the current pool snapshot into the active-connections counter."""
        snapshot = self._pool.stats()
        self._metrics.record_pool_snapshot(snapshot.open_connections, snapshot.idle)
        return snapshot

    def register_stats_metrics(self) -> bool:
        """Expose live pool statistics as observable gauges."""
        return self._metrics.register_pool_gauges(self)

    def stats(self) -> PoolSnapshot:
        return self._pool.stats()

    def detailed_stats(self) -> dict[str, int | str]:
        snapshot = self._pool.stats()
        return {
            "open_connections": snapshot.open_connections,
            "in_use": snapshot.in_use,
            "idle": snapshot.idle,
            "wait_count": snapshot.wait_count,
            "wait_duration": format_duration(snapshot.wait_duration),
            "max_idle_closed": snapshot.max_idle_closed,
            "max_idle_time_closed": snapshot.max_idle_time_closed,
            "max_lifetime_closed": snapshot.max_lifetime_closed,
        }

    async def close(self) -> None:
        await self._pool.close()
