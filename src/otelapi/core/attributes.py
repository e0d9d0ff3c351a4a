"""Attribute value normalization for spans, metrics and log records.

Attribute values form a closed set: ``str``, ``bool``, ``int`` and ``float``.
Anything else is rendered with ``str()`` instead of being rejected.
"""

from collections.abc import Mapping
from typing import Any

from otelapi.core.models import Attributes, AttributeValue

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def coerce_attribute(value: Any) -> AttributeValue:
    """Normalize a single attribute value.

    Args:
        value: Arbitrary Python value.

    Returns:
        The value itself when it is a str, bool, float or an int that fits in
        64 bits; otherwise its string representation.
    """
    # bool first: it is a subclass of int
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
        return str(value)
    if isinstance(value, (str, float)):
        return value
    return str(value)


def coerce_attributes(attributes: Mapping[str, Any] | None = None, **extra: Any) -> Attributes:
    """Normalize a mapping (and keyword extras) into an attribute dict."""
    merged: dict[str, Any] = dict(attributes or {})
    merged.update(extra)
    return {str(key): coerce_attribute(value) for key, value in merged.items()}
