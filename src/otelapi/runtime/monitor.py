"""Background sampling of connection-pool statistics."""

import asyncio

from otelapi.adapters.storage.database import Database
from otelapi.core.models import PoolSnapshot
from otelapi.telemetry.logs import StructuredLogger, get_logger

STOPPED = "stopped"
RUNNING = "running"


class ConnectionMonitor:
    """Samples the pool on a fixed interval until told to stop.

    Each tick pushes the snapshot into the database metrics and logs its
    summary at info level. The monitor owns one asyncio task; ``stop()`` sets
    the stop event and awaits that task, so no timer outlives the monitor.

    Example:
        ```python
        monitor = ConnectionMonitor(database)
        monitor.start(interval=30.0)
        ...
        await monitor.stop()
        ```
    """

    def __init__(self, database: Database, logger: StructuredLogger | None = None) -> None:
        self._database = database
        self._logger = logger if logger is not None else get_logger("otelapi.monitor")
        self._task: asyncio.Task[None] | None = None
        self._stop: asyncio.Event | None = None
        self.ticks = 0

    @property
    def state(self) -> str:
        if self._task is not None and not self._task.done():
            return RUNNING
        return STOPPED

    def tick(self) -> PoolSnapshot:
        """Take one snapshot, record it and log it."""
        snapshot = self._database.record_connection_metrics()
        self.ticks += 1
        self._logger.info(snapshot.summary())
        return snapshot

    async def run(self, interval: float, stop: asyncio.Event) -> None:
        """Tick every ``interval`` seconds until ``stop`` is set.

        Args:
            interval: Seconds between ticks; must be positive.
            stop: Cancellation signal, observed between ticks.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._logger.debug("Connection monitor started", interval=interval)
        try:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), timeout=interval)
                except TimeoutError:
                    self._safe_tick()
        finally:
            self._logger.debug("Connection monitor stopped", ticks=self.ticks)

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception as exc:
            self._logger.with_error(exc).warn("Connection pool sampling failed")

    def start(self, interval: float, stop: asyncio.Event | None = None) -> asyncio.Event:
        """Start ticking in a background task.

        Args:
            interval: Seconds between ticks.
            stop: External stop signal; a private one is created if omitted.

        Returns:
            The event that stops the monitor when set.
        """
        if self.state == RUNNING:
            raise RuntimeError("connection monitor is already running")
        self._stop = stop if stop is not None else asyncio.Event()
        self._task = asyncio.create_task(
            self.run(interval, self._stop), name="otelapi-connection-monitor"
        )
        return self._stop

    async def wait(self) -> None:
        """Wait until the background task has exited."""
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """Signal the task and wait for it to exit."""
        if self._task is None:
            return
        if self._stop is not None:
            self._stop.set()
        try:
            await self._task
        finally:
            self._task = None
            self._stop = None
