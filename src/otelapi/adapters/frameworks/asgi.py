"""ASGI middleware binding each HTTP request to a server span, request
metrics and a completion log line.

The middleware is a plain ASGI callable rather than a Starlette
``BaseHTTPMiddleware``, so the span and context variables it sets are visible
to the endpoint running underneath it.
"""

import time
from collections.abc import Callable, Coroutine
from typing import Any

from opentelemetry.trace import SpanKind
from starlette.routing import Match

from otelapi.core.models import format_duration
from otelapi.core.status import completion_message, get_log_level_for_status, get_status_class
from otelapi.telemetry.context import extract_context
from otelapi.telemetry.logs import StructuredLogger, get_logger
from otelapi.telemetry.provider import Telemetry

# ASGI type aliases
Scope = dict[str, Any]
Receive = Callable[[], Coroutine[Any, Any, dict[str, Any]]]
Send = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
ASGIApp = Callable[[Scope, Receive, Send], Coroutine[Any, Any, None]]

UNMATCHED_ROUTE = "unmatched"


def _header(scope: Scope, name: bytes) -> str | None:
    headers: list[tuple[bytes, bytes]] = scope.get("headers", [])
    for key, value in headers:
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def _parse_length(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length >= 0 else None


def resolve_route(scope: Scope) -> str:
    """Return the route template the router will dispatch ``scope`` to.

    Resolution happens before the request runs so the attributes used when
    the request starts and when it finishes are identical. A path that only
    matches with another method still reports its template; a path no route
    knows reports ``"unmatched"``.

    Args:
        scope: ASGI scope; its ``app`` entry is set by Starlette.

    Returns:
        Route template such as ``/api/users/{user_id}``, or ``"unmatched"``.
    """
    app = scope.get("app")
    routes = getattr(app, "routes", None)
    if not routes:
        return UNMATCHED_ROUTE
    partial: str | None = None
    for route in routes:
        match, _ = route.matches(scope)
        path = getattr(route, "path", None)
        if match is Match.FULL:
            return path or UNMATCHED_ROUTE
        if match is Match.PARTIAL and partial is None:
            partial = path
    return partial or UNMATCHED_ROUTE


def client_ip(scope: Scope) -> str:
    """First ``X-Forwarded-For`` hop, else the peer address."""
    forwarded = _header(scope, b"x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = scope.get("client")
    return client[0] if client else ""


class TelemetryMiddleware:
    """ASGI middleware recording a span, metrics and a log line per request.

    For every HTTP request it:

    - continues the inbound W3C trace context or starts a new trace,
    - opens a SERVER span that stays current while the app runs,
    - counts the request as active with ``{method, route}`` and records the
      declared request size,
    - on exit, always releases the active slot and records the request
      count, duration and response size with
      ``{method, route, status_code, status_class}``,
    - logs the completion at a level chosen by the status code.

    An exception escaping the app is recorded on the span, counted as a 500
    and re-raised.
    """

    def __init__(
        self,
        app: ASGIApp,
        telemetry: Telemetry,
        logger: StructuredLogger | None = None,
        route_resolver: Callable[[Scope], str] = resolve_route,
    ) -> None:
        """Initialize the middleware.

        Args:
            app: The ASGI application to wrap.
            telemetry: Telemetry bundle providing the tracer and instruments.
            logger: Logger for completion lines; ``otelapi.http`` by default.
            route_resolver: Maps a scope to its low-cardinality route label.
        """
        self.app = app
        self.telemetry = telemetry
        self.logger = logger if logger is not None else get_logger("otelapi.http")
        self.route_resolver = route_resolver

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI callable interface that processes requests through the wrapped app."""
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method: str = scope["method"]
        route = self.route_resolver(scope)
        request_size = _parse_length(_header(scope, b"content-length"))
        metrics = self.telemetry.request_metrics
        captured: dict[str, Any] = {"status": None, "content_length": None, "body_size": 0}

        async def wrapped_send(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                captured["status"] = message["status"]
                for key, value in message.get("headers", []):
                    if key.lower() == b"content-length":
                        captured["content_length"] = _parse_length(value.decode("latin-1"))
            elif message["type"] == "http.response.body":
                captured["body_size"] += len(message.get("body", b""))
            await send(message)

        with self.telemetry.spans.start_span(
            f"{method} {route}",
            parent=extract_context(scope.get("headers", [])),
            kind=SpanKind.SERVER,
            attributes={
                "http.method": method,
                "http.route": route,
                "http.target": scope.get("path", ""),
                "http.scheme": scope.get("scheme", "http"),
            },
        ) as span:
            start_time = time.perf_counter()
            metrics.request_started(method, route, request_size)
            exception: Exception | None = None
            try:
                await self.app(scope, receive, wrapped_send)
            except Exception as exc:
                exception = exc
                raise
            finally:
                duration = time.perf_counter() - start_time
                if exception is not None:
                    status_code = 500
                else:
                    status_code = captured["status"] or 200
                response_size = captured["content_length"]
                if response_size is None:
                    response_size = captured["body_size"]
                metrics.request_finished(method, route, status_code, duration, response_size)

                span.set_status_code(status_code)
                span.set_attributes(
                    {
                        "http.status_code": status_code,
                        "http.status_class": get_status_class(status_code),
                        "http.request.size": request_size or 0,
                        "http.response.size": response_size,
                        "user.agent": _header(scope, b"user-agent") or "",
                        "client.ip": client_ip(scope),
                        "http.duration": duration,
                    }
                )
                self._log_completion(scope, route, status_code, duration, exception)

    def _log_completion(
        self,
        scope: Scope,
        route: str,
        status_code: int,
        duration: float,
        exception: Exception | None,
    ) -> None:
        fields: dict[str, Any] = {
            "method": scope["method"],
            "path": scope.get("path", ""),
            "route": route,
            "status_code": status_code,
            "latency": format_duration(duration),
            "client_ip": client_ip(scope),
            "user_agent": _header(scope, b"user-agent") or "",
        }
        if exception is not None:
            fields["error"] = str(exception) or type(exception).__name__
        self.logger.log(
            get_log_level_for_status(status_code), completion_message(status_code), **fields
        )
