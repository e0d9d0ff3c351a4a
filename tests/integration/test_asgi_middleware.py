"""Integration tests for TelemetryMiddleware on a raw ASGI app."""

import asyncio
import logging

import pytest
from opentelemetry.trace import SpanKind, StatusCode

from otelapi.adapters.frameworks.asgi import (
    UNMATCHED_ROUTE,
    Receive,
    Scope,
    Send,
    TelemetryMiddleware,
    client_ip,
)
from otelapi.telemetry.logs import get_logger
from otelapi.telemetry.provider import Telemetry
from otelapi.telemetry.tracing import add_span_attribute

pytestmark = [pytest.mark.integration, pytest.mark.tier(2)]

TRACEPARENT = b"00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"


async def noop_receive():
    """Noop receive callable for testing."""
    return {"type": "http.request", "body": b""}


def make_app(status: int = 200, body: bytes = b"OK", content_length: bool = True):
    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        headers = [(b"content-length", str(len(body)).encode())] if content_length else []
        await send({"type": "http.response.start", "status": status, "headers": headers})
        await send({"type": "http.response.body", "body": body})

    return app


async def failing_app(scope: Scope, receive: Receive, send: Send) -> None:
    raise RuntimeError("handler exploded")


def _wrap(app, telemetry: Telemetry, route: str = "/items/{item_id}") -> TelemetryMiddleware:
    return TelemetryMiddleware(app, telemetry, route_resolver=lambda scope: route)


def _active(metric_points) -> dict[tuple[str, str], int]:
    return {
        (p.attributes["method"], p.attributes["route"]): p.value
        for p in metric_points("http_active_requests")
    }


class TestRequestMetrics:
    @pytest.mark.parametrize("status", [200, 201, 302, 404, 422, 500])
    async def test_active_requests_net_zero(
        self, telemetry: Telemetry, metric_points, asgi_scope, asgi_send_capture, status: int
    ) -> None:
        send, _ = asgi_send_capture
        middleware = _wrap(make_app(status=status), telemetry)
        await middleware(asgi_scope(path="/items/1"), noop_receive, send)
        assert _active(metric_points) == {("GET", "/items/{item_id}"): 0}

    async def test_active_requests_net_zero_on_exception(
        self, telemetry: Telemetry, metric_points, asgi_scope, asgi_send_capture
    ) -> None:
        send, responses = asgi_send_capture
        middleware = _wrap(failing_app, telemetry)
        with pytest.raises(RuntimeError, match="handler exploded"):
            await middleware(asgi_scope(), noop_receive, send)
        assert responses == []
        assert _active(metric_points) == {("GET", "/items/{item_id}"): 0}
        (requests,) = metric_points("http_requests_total")
        assert requests.attributes["status_code"] == "500"
        assert requests.attributes["status_class"] == "5xx"

    async def test_active_during_request(
        self, telemetry: Telemetry, metric_points, asgi_scope, asgi_send_capture
    ) -> None:
        seen: list[dict] = []

        async def app(scope: Scope, receive: Receive, send: Send) -> None:
            seen.append(_active(metric_points))
            await make_app()(scope, receive, send)

        send, _ = asgi_send_capture
        await _wrap(app, telemetry)(asgi_scope(), noop_receive, send)
        assert seen == [{("GET", "/items/{item_id}"): 1}]

    async def test_outcome_attributes(
        self, telemetry: Telemetry, metric_points, asgi_scope, asgi_send_capture
    ) -> None:
        send, _ = asgi_send_capture
        scope = asgi_scope(method="POST", headers=[(b"content-length", b"256")])
        await _wrap(make_app(status=201, body=b"x" * 64), telemetry)(scope, noop_receive, send)

        expected = {
            "method": "POST",
            "route": "/items/{item_id}",
            "status_code": "201",
            "status_class": "2xx",
        }
        (requests,) = metric_points("http_requests_total")
        assert dict(requests.attributes) == expected
        (duration,) = metric_points("http_request_duration_seconds")
        assert duration.count == 1
        assert dict(duration.attributes) == expected
        (response_size,) = metric_points("http_response_size_bytes")
        assert response_size.sum == 64
        (request_size,) = metric_points("http_request_size_bytes")
        assert request_size.sum == 256

    async def test_response_size_falls_back_to_body_bytes(
        self, telemetry: Telemetry, metric_points, asgi_scope, asgi_send_capture
    ) -> None:
        send, _ = asgi_send_capture
        app = make_app(body=b"streamed body", content_length=False)
        await _wrap(app, telemetry)(asgi_scope(), noop_receive, send)
        (response_size,) = metric_points("http_response_size_bytes")
        assert response_size.sum == len(b"streamed body")

    async def test_missing_status_defaults_to_200(
        self, telemetry: Telemetry, metric_points, asgi_scope, asgi_send_capture
    ) -> None:
        async def silent_app(scope: Scope, receive: Receive, send: Send) -> None:
            return None

        send, _ = asgi_send_capture
        await _wrap(silent_app, telemetry)(asgi_scope(), noop_receive, send)
        (requests,) = metric_points("http_requests_total")
        assert requests.attributes["status_code"] == "200"

    async def test_raw_scope_without_router_is_unmatched(
        self, telemetry: Telemetry, metric_points, asgi_scope, asgi_send_capture
    ) -> None:
        send, _ = asgi_send_capture
        await TelemetryMiddleware(make_app(), telemetry)(asgi_scope(), noop_receive, send)
        (requests,) = metric_points("http_requests_total")
        assert requests.attributes["route"] == UNMATCHED_ROUTE


class TestConcurrentRequests:
    REQUESTS = 50

    async def test_overlapping_requests_keep_totals(
        self, telemetry: Telemetry, metric_points, asgi_scope, asgi_send_capture
    ) -> None:
        async def app(scope: Scope, receive: Receive, send: Send) -> None:
            await asyncio.sleep(0)
            await make_app()(scope, receive, send)

        send, _ = asgi_send_capture
        middleware = _wrap(app, telemetry)
        await asyncio.gather(
            *(
                middleware(asgi_scope(path=f"/items/{i}"), noop_receive, send)
                for i in range(self.REQUESTS)
            )
        )
        (requests,) = metric_points("http_requests_total")
        assert requests.value == self.REQUESTS
        (duration,) = metric_points("http_request_duration_seconds")
        assert duration.count == self.REQUESTS
        assert _active(metric_points) == {("GET", "/items/{item_id}"): 0}

    async def test_each_completion_log_carries_its_own_span(
        self, telemetry: Telemetry, span_exporter, finished_logs, asgi_scope, asgi_send_capture
    ) -> None:
        from otelapi.adapters.logging import configure_logging

        configure_logging("info", logger_provider=telemetry.logger_provider, stream=_Sink())

        async def app(scope: Scope, receive: Receive, send: Send) -> None:
            await asyncio.sleep(0)
            await make_app()(scope, receive, send)

        send, _ = asgi_send_capture
        middleware = _wrap(app, telemetry)
        await asyncio.gather(
            *(
                middleware(asgi_scope(path=f"/items/{i}"), noop_receive, send)
                for i in range(self.REQUESTS)
            )
        )
        spans = {
            span.attributes["http.target"]: span.context
            for span in span_exporter.get_finished_spans()
        }
        records = [r for r in finished_logs() if r.body == "HTTP request completed successfully"]
        assert len(spans) == len(records) == self.REQUESTS
        for record in records:
            span_context = spans[record.attributes["path"]]
            assert record.trace_id == span_context.trace_id
            assert record.span_id == span_context.span_id


class TestServerSpan:
    async def test_span_attributes(
        self, telemetry: Telemetry, span_exporter, asgi_scope, asgi_send_capture
    ) -> None:
        send, _ = asgi_send_capture
        scope = asgi_scope(path="/items/7", headers=[(b"user-agent", b"pytest")])
        await _wrap(make_app(body=b"hello"), telemetry)(scope, noop_receive, send)
        (span,) = span_exporter.get_finished_spans()
        assert span.name == "GET /items/{item_id}"
        assert span.kind is SpanKind.SERVER
        assert span.status.status_code is StatusCode.OK
        assert span.attributes["http.method"] == "GET"
        assert span.attributes["http.route"] == "/items/{item_id}"
        assert span.attributes["http.target"] == "/items/7"
        assert span.attributes["http.status_code"] == 200
        assert span.attributes["http.status_class"] == "2xx"
        assert span.attributes["http.response.size"] == 5
        assert span.attributes["user.agent"] == "pytest"
        assert span.attributes["client.ip"] == "10.0.0.1"
        assert span.attributes["http.duration"] >= 0
        assert span.end_time >= span.start_time

    @pytest.mark.parametrize("status", [400, 404, 500, 503])
    async def test_error_status_for_4xx_and_5xx(
        self, telemetry: Telemetry, span_exporter, asgi_scope, asgi_send_capture, status: int
    ) -> None:
        send, _ = asgi_send_capture
        await _wrap(make_app(status=status), telemetry)(asgi_scope(), noop_receive, send)
        (span,) = span_exporter.get_finished_spans()
        assert span.status.status_code is StatusCode.ERROR
        assert span.attributes["error"] is True

    async def test_exception_recorded_once(
        self, telemetry: Telemetry, span_exporter, asgi_scope, asgi_send_capture
    ) -> None:
        send, _ = asgi_send_capture
        with pytest.raises(RuntimeError):
            await _wrap(failing_app, telemetry)(asgi_scope(), noop_receive, send)
        (span,) = span_exporter.get_finished_spans()
        assert span.status.status_code is StatusCode.ERROR
        assert span.status.description == "handler exploded"
        assert [event.name for event in span.events] == ["exception"]
        assert span.attributes["http.status_code"] == 500

    async def test_inbound_traceparent_is_continued(
        self, telemetry: Telemetry, span_exporter, asgi_scope, asgi_send_capture
    ) -> None:
        send, _ = asgi_send_capture
        scope = asgi_scope(headers=[(b"traceparent", TRACEPARENT)])
        await _wrap(make_app(), telemetry)(scope, noop_receive, send)
        (span,) = span_exporter.get_finished_spans()
        assert format(span.context.trace_id, "032x") == "4bf92f3577b34da6a3ce929d0e0e4736"
        assert format(span.parent.span_id, "016x") == "00f067aa0ba902b7"

    async def test_malformed_traceparent_starts_new_trace(
        self, telemetry: Telemetry, span_exporter, asgi_scope, asgi_send_capture
    ) -> None:
        send, _ = asgi_send_capture
        scope = asgi_scope(headers=[(b"traceparent", b"not-a-trace")])
        await _wrap(make_app(), telemetry)(scope, noop_receive, send)
        (span,) = span_exporter.get_finished_spans()
        assert span.parent is None
        assert span.context.trace_id != 0

    async def test_handler_annotates_request_span(
        self, telemetry: Telemetry, span_exporter, asgi_scope, asgi_send_capture
    ) -> None:
        async def app(scope: Scope, receive: Receive, send: Send) -> None:
            add_span_attribute("handler", "GetItem")
            await make_app()(scope, receive, send)

        send, _ = asgi_send_capture
        await _wrap(app, telemetry)(asgi_scope(), noop_receive, send)
        (span,) = span_exporter.get_finished_spans()
        assert span.attributes["handler"] == "GetItem"


class TestCompletionLog:
    @pytest.mark.parametrize(
        ("status", "level", "message"),
        [
            (200, logging.INFO, "HTTP request completed successfully"),
            (404, logging.WARNING, "HTTP request completed with client error"),
            (503, logging.ERROR, "HTTP request completed with server error"),
        ],
    )
    async def test_level_follows_status(
        self,
        telemetry: Telemetry,
        asgi_scope,
        asgi_send_capture,
        caplog: pytest.LogCaptureFixture,
        status: int,
        level: int,
        message: str,
    ) -> None:
        caplog.set_level(logging.DEBUG, logger="otelapi")
        send, _ = asgi_send_capture
        await _wrap(make_app(status=status), telemetry)(asgi_scope(), noop_receive, send)
        (record,) = [r for r in caplog.records if r.name == "otelapi.http"]
        assert record.levelno == level
        assert record.getMessage() == message
        assert record.fields["status_code"] == status
        assert record.fields["route"] == "/items/{item_id}"
        assert record.fields["client_ip"] == "10.0.0.1"
        assert "latency" in record.fields

    async def test_completion_log_level_ignores_configured_minimum(
        self, telemetry: Telemetry, asgi_scope, asgi_send_capture, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.ERROR, logger="otelapi")
        send, _ = asgi_send_capture
        await _wrap(make_app(status=404), telemetry)(asgi_scope(), noop_receive, send)
        await _wrap(make_app(status=500), telemetry)(asgi_scope(), noop_receive, send)
        levels = [r.levelno for r in caplog.records if r.name == "otelapi.http"]
        assert levels == [logging.ERROR]

    async def test_completion_log_is_exported_with_span_ids(
        self, telemetry: Telemetry, span_exporter, finished_logs, asgi_scope, asgi_send_capture
    ) -> None:
        from otelapi.adapters.logging import configure_logging

        configure_logging("info", logger_provider=telemetry.logger_provider, stream=_Sink())
        send, _ = asgi_send_capture
        await _wrap(make_app(), telemetry)(asgi_scope(), noop_receive, send)
        (span,) = span_exporter.get_finished_spans()
        (record,) = [r for r in finished_logs() if r.body == "HTTP request completed successfully"]
        assert record.trace_id == span.context.trace_id
        assert record.span_id == span.context.span_id
        assert record.attributes["status_code"] == 200

    async def test_custom_logger(self, telemetry: Telemetry, asgi_scope, asgi_send_capture, caplog) -> None:
        caplog.set_level(logging.INFO, logger="otelapi")
        send, _ = asgi_send_capture
        middleware = TelemetryMiddleware(
            make_app(), telemetry, logger=get_logger("access"), route_resolver=lambda s: "/x"
        )
        await middleware(asgi_scope(), noop_receive, send)
        assert [r.name for r in caplog.records if r.name.startswith("otelapi.access")] == [
            "otelapi.access"
        ]


class _Sink:
    def write(self, text: str) -> int:
        return len(text)

    def flush(self) -> None:
        pass


class TestPassThrough:
    async def test_non_http_scope_is_forwarded(self, telemetry: Telemetry, span_exporter) -> None:
        calls: list[str] = []

        async def app(scope: Scope, receive: Receive, send: Send) -> None:
            calls.append(scope["type"])

        await TelemetryMiddleware(app, telemetry)({"type": "lifespan"}, noop_receive, None)
        assert calls == ["lifespan"]
        assert span_exporter.get_finished_spans() == ()


class TestClientIp:
    def test_forwarded_for_wins(self, asgi_scope) -> None:
        scope = asgi_scope(headers=[(b"x-forwarded-for", b"203.0.113.9, 10.0.0.2")])
        assert client_ip(scope) == "203.0.113.9"

    def test_peer_address(self, asgi_scope) -> None:
        assert client_ip(asgi_scope()) == "10.0.0.1"

    def test_unknown_peer(self) -> None:
        assert client_ip({"type": "http", "headers": []}) == ""
