"""Port interfaces for the data-access and telemetry seams.

These protocols define the narrow capabilities the telemetry core depends on.
Concrete adapters (aiosqlite pool, instrumented database handle) satisfy them
structurally, and tests substitute fakes.
"""

from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

from otelapi.core.models import PoolSnapshot


@runtime_checkable
class HealthChecker(Protocol):
    """Port for the health endpoints.

    ``health()`` returns normally when the backing store is reachable and
    raises otherwise.
    """

    async def health(self) -> None: ...


@runtime_checkable
class PoolStatsSource(Protocol):
    """Port for reading live connection-pool statistics.

    ``stats()`` must be a non-blocking snapshot; it never waits for the pool.
    """

    def stats(self) -> PoolSnapshot: ...


@runtime_checkable
class DBConnection(Protocol):
    """Minimal async DB-API connection used by the pool."""

    async def execute(self, sql: str, parameters: Iterable[Any] = ...) -> Any: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    async def close(self) -> None: ...


@runtime_checkable
class Connector(Protocol):
    """Port for opening new physical connections."""

    async def connect(self) -> DBConnection: ...

