"""HTTP status helpers shared by metrics, logging and span status."""

import logging
from collections.abc import Sequence

STATUS_CLASSES = ("1xx", "2xx", "3xx", "4xx", "5xx")


def get_status_class(status_code: int) -> str:
    """Return the hundreds bucket of an HTTP status code.

    Codes below 100 or at/above 600 fall back to ``"1xx"``.

    Args:
        status_code: HTTP status code from the response.

    Returns:
        One of ``"1xx"``, ``"2xx"``, ``"3xx"``, ``"4xx"``, ``"5xx"``.
    """
    if status_code < 100 or status_code >= 600:
        return "1xx"
    return f"{status_code // 100}xx"


def get_log_level_for_status(status_code: int) -> int:
    """Determine the completion log level for an HTTP status code.

    Maps status codes to log levels:
    - 500 and above → ERROR
    - 400-499 → WARNING
    - Other → INFO
    """
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def completion_message(status_code: int) -> str:
    if status_code >= 500:
        return "HTTP request completed with server error"
    if status_code >= 400:
        return "HTTP request completed with client error"
    return "HTTP request completed successfully"


def is_error_outcome(errors: Sequence[str], status_code: int | None) -> bool:
    """An operation failed if it recorded errors or ended with a 4xx/5xx code."""
    if errors:
        return True
    return status_code is not None and status_code >= 400


def describe_outcome(errors: Sequence[str], status_code: int | None) -> str:
    """Human-readable status description for a failed operation."""
    if errors:
        return "; ".join(errors)
    if status_code is not None and status_code >= 400:
        return f"HTTP {status_code}"
    return ""
