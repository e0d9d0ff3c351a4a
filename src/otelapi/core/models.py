"""Core domain models for telemetry correlation and data access."""

from dataclasses import dataclass
from datetime import datetime

# Closed set of attribute value types accepted by spans, metrics and logs.
AttributeValue = str | bool | int | float
Attributes = dict[str, AttributeValue]


@dataclass(frozen=True)
class TraceContext:
    """Correlation identifiers of the unit of work currently executing.

    Attributes:
        trace_id: 128-bit trace identifier shared by every span of a request.
        span_id: 64-bit identifier of the current span.
        parent_span_id: Identifier of the parent span, if any.
        sampled: Sampling decision carried with the context.
    """

    trace_id: int
    span_id: int
    parent_span_id: int | None = None
    sampled: bool = False

    @property
    def is_valid(self) -> bool:
        """True when both identifiers are non-zero."""
        return self.trace_id != 0 and self.span_id != 0

    @property
    def trace_id_hex(self) -> str:
        return format(self.trace_id, "032x")

    @property
    def span_id_hex(self) -> str:
        return format(self.span_id, "016x")


INVALID_TRACE_CONTEXT = TraceContext(trace_id=0, span_id=0)


@dataclass(frozen=True)
class PoolSnapshot:
    """Point-in-time reading of a connection pool.

    Attributes:
        open_connections: Connections currently established (in use + idle).
        in_use: Connections checked out by callers.
        idle: Connections parked in the pool.
        wait_count: Total number of acquisitions that had to wait.
        wait_duration: Cumulative seconds spent waiting for a connection.
        max_idle_closed: Connections closed because the idle set was full.
        max_idle_time_closed: Connections closed after idling too long.
        max_lifetime_closed: Connections closed after exceeding their lifetime.
    """

    open_connections: int = 0
    in_use: int = 0
    idle: int = 0
    wait_count: int = 0
    wait_duration: float = 0.0
    max_idle_closed: int = 0
    max_idle_time_closed: int = 0
    max_lifetime_closed: int = 0

    def summary(self) -> str:
        """Human-readable one-line description used by the pool monitor."""
        return (
            f"DB Stats - Open: {self.open_connections}, InUse: {self.in_use}, "
            f"Idle: {self.idle}, WaitCount: {self.wait_count}, "
            f"WaitDuration: {format_duration(self.wait_duration)}"
        )


def format_duration(seconds: float) -> str:
    """Render a duration compactly, e.g. ``0s``, ``12.5ms``, ``1.25s``."""
    if seconds <= 0:
        return "0s"
    if seconds < 1e-3:
        return f"{seconds * 1e6:g}µs"
    if seconds < 1:
        return f"{seconds * 1e3:g}ms"
    return f"{seconds:g}s"


@dataclass
class User:
    """A user row.

    Attributes:
        id: Primary key.
        name: Display name.
        email: Unique e-mail address.
        bio: Free-form biography, empty when unset.
        created_at: Creation time (UTC).
        updated_at: Last modification time (UTC).
    """

    id: int
    name: str
    email: str
    bio: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_response(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "bio": self.bio,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class UserChanges:
    """Partial update of a user; ``None`` fields are left untouched."""

    name: str | None = None
    email: str | None = None
    bio: str | None = None

    def as_columns(self) -> dict[str, str]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class NewUser:
    """Fields required to insert a user."""

    name: str
    email: str
    bio: str = ""
