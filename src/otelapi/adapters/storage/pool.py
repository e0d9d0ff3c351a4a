"""Asyncio connection pool for aiosqlite with database/sql-style statistics.

The pool bounds the number of open connections, parks released connections
up to ``max_idle``, retires connections that exceeded their lifetime or idle
time, and counts every wait. ``stats()`` reads plain counters and never waits
on the pool lock, so monitors and request handlers can sample it freely.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import aiosqlite

from otelapi.core.errors import PoolClosedError, PoolTimeoutError
from otelapi.core.models import PoolSnapshot
from otelapi.core.ports import Connector

logger = logging.getLogger(__name__)


class SQLiteConnector:
    """Opens aiosqlite connections to one database file."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    @property
    def db_path(self) -> str:
        return self._db_path

    async def connect(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self._db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys=ON")
        return conn


@dataclass
class _PooledConnection:
    connection: aiosqlite.Connection
    created_at: float = field(default_factory=time.monotonic)
    idle_since: float = field(default_factory=time.monotonic)


class ConnectionPool:
    """Bounded pool of database connections.

    Args:
        connector: Factory for new physical connections.
        max_open: Upper bound on open connections; acquirers wait beyond it.
        max_idle: Connections kept parked after release; extras are closed.
        max_lifetime: Seconds after which a connection is retired, or None.
        max_idle_time: Seconds a parked connection may idle, or None.
        acquire_timeout: Seconds to wait for a free connection, or None to
            wait indefinitely.
    """

    def __init__(
        self,
        connector: Connector,
        *,
        max_open: int = 25,
        max_idle: int = 5,
        max_lifetime: float | None = 300.0,
        max_idle_time: float | None = None,
        acquire_timeout: float | None = None,
    ) -> None:
        if max_open < 1:
            raise ValueError("max_open must be at least 1")
        self._connector = connector
        self._max_open = max_open
        self._max_idle = max(0, min(max_idle, max_open))
        self._max_lifetime = max_lifetime if max_lifetime and max_lifetime > 0 else None
        self._max_idle_time = max_idle_time if max_idle_time and max_idle_time > 0 else None
        self._acquire_timeout = acquire_timeout
        self._idle: deque[_PooledConnection] = deque()
        self._open = 0
        self._in_use = 0
        self._wait_count = 0
        self._wait_duration = 0.0
        self._max_idle_closed = 0
        self._max_idle_time_closed = 0
        self._max_lifetime_closed = 0
        self._closed = False
        self._condition: asyncio.Condition | None = None

    def _get_condition(self) -> asyncio.Condition:
        """Get or create the pool condition (lazy to avoid event loop issues)."""
        if self._condition is None:
            self._condition = asyncio.Condition()
        return self._condition

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def max_open(self) -> int:
        return self._max_open

    def stats(self) -> PoolSnapshot:
        """Non-blocking snapshot of the pool counters."""
        return PoolSnapshot(
            open_connections=self._open,
            in_use=self._in_use,
            idle=len(self._idle),
            wait_count=self._wait_count,
            wait_duration=self._wait_duration,
            max_idle_closed=self._max_idle_closed,
            max_idle_time_closed=self._max_idle_time_closed,
            max_lifetime_closed=self._max_lifetime_closed,
        )

    def _lifetime_exceeded(self, pooled: _PooledConnection, now: float) -> bool:
        return self._max_lifetime is not None and now - pooled.created_at >= self._max_lifetime

    def _pop_idle(self, retired: list[_PooledConnection]) -> _PooledConnection | None:
        now = time.monotonic()
        while self._idle:
            pooled = self._idle.pop()
            if self._lifetime_exceeded(pooled, now):
                self._max_lifetime_closed += 1
            elif (
                self._max_idle_time is not None
                and now - pooled.idle_since >= self._max_idle_time
            ):
                self._max_idle_time_closed += 1
            else:
                return pooled
            self._open -= 1
            retired.append(pooled)
        return None

    async def _wait(self, condition: asyncio.Condition, deadline: float | None) -> None:
        if deadline is None:
            await condition.wait()
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PoolTimeoutError("timed out waiting for a database connection")
        try:
            await asyncio.wait_for(condition.wait(), timeout=remaining)
        except TimeoutError:
            raise PoolTimeoutError("timed out waiting for a database connection") from None

    async def _acquire(self) -> _PooledConnection:
        if self._closed:
            raise PoolClosedError()
        condition = self._get_condition()
        retired: list[_PooledConnection] = []
        wait_started: float | None = None
        deadline = (
            time.monotonic() + self._acquire_timeout if self._acquire_timeout is not None else None
        )
        pooled: _PooledConnection | None = None
        try:
            async with condition:
                while True:
                    if self._closed:
                        raise PoolClosedError()
                    pooled = self._pop_idle(retired)
                    if pooled is not None or self._open < self._max_open:
                        if pooled is None:
                            # reserve a slot; the connection is opened outside the lock
                            self._open += 1
                        self._in_use += 1
                        break
                    if wait_started is None:
                        wait_started = time.monotonic()
                        self._wait_count += 1
                    await self._wait(condition, deadline)
        finally:
            if wait_started is not None:
                self._wait_duration += time.monotonic() - wait_started
            for stale in retired:
                await _close_quietly(stale)

        if pooled is not None:
            return pooled
        try:
            connection = await self._connector.connect()
        except BaseException:
            await self._release_slot()
            raise
        pooled = _PooledConnection(connection)
        if self._closed:
            await self._release_slot()
            await _close_quietly(pooled)
            raise PoolClosedError()
        return pooled

    async def _release_slot(self) -> None:
        condition = self._get_condition()
        async with condition:
            self._open -= 1
            self._in_use -= 1
            condition.notify()

    async def _release(self, pooled: _PooledConnection, discard: bool = False) -> None:
        condition = self._get_condition()
        close = discard or self._closed
        async with condition:
            self._in_use -= 1
            if not close:
                now = time.monotonic()
                if self._lifetime_exceeded(pooled, now):
                    self._max_lifetime_closed += 1
                    close = True
                elif len(self._idle) >= self._max_idle:
                    self._max_idle_closed += 1
                    close = True
                else:
                    pooled.idle_since = now
                    self._idle.append(pooled)
            if close:
                self._open -= 1
            condition.notify()
        if close:
            await _close_quietly(pooled)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Check out a connection for the duration of the block.

        An exception escaping the block rolls back the open transaction; a
        connection whose rollback fails is closed instead of being reused.

        Raises:
            PoolClosedError: The pool has been closed.
            PoolTimeoutError: No connection became free before the timeout.
        """
        pooled = await self._acquire()
        discard = False
        try:
            yield pooled.connection
        except BaseException:
            try:
                await pooled.connection.rollback()
            except Exception:
                discard = True
            raise
        finally:
            await self._release(pooled, discard=discard)

    async def ping(self) -> None:
        """Round-trip a trivial query; raises when the database is unusable."""
        async with self.connection() as conn:
            async with conn.execute("SELECT 1") as cursor:
                await cursor.fetchone()

    async def close(self) -> None:
        """Close idle connections and refuse further acquisitions.

        Connections still checked out are closed when they are released.
        Waiting acquirers are woken and raise ``PoolClosedError``.
        """
        if self._closed:
            return
        self._closed = True
        condition = self._get_condition()
        async with condition:
            parked = list(self._idle)
            self._idle.clear()
            self._open -= len(parked)
            condition.notify_all()
        for pooled in parked:
            await _close_quietly(pooled)


async def _close_quietly(pooled: _PooledConnection) -> None:
    try:
        await pooled.connection.close()
    except Exception:
        logger.debug("Error closing discarded database connection", exc_info=True)
