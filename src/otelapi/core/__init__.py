"""Framework-free domain types and helpers."""

from otelapi.core.attributes import coerce_attribute, coerce_attributes
from otelapi.core.models import (
    INVALID_TRACE_CONTEXT,
    PoolSnapshot,
    TraceContext,
    User,
)
from otelapi.core.status import get_log_level_for_status, get_status_class

__all__ = [
    "INVALID_TRACE_CONTEXT",
    "PoolSnapshot",
    "TraceContext",
    "User",
    "coerce_attribute",
    "coerce_attributes",
    "get_log_level_for_status",
    "get_status_class",
]
