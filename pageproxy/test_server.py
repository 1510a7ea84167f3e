import logging
from unittest.mock import Mock

from opentelemetry.sdk.trace.export import SpanExportResult

from pageproxy.server import FilteringSpanExporter


def test_healthz(proxy_client, upstream):
    response = proxy_client.get("/healthz")

    assert response.status_code == 200
    assert response.text == "ok"
    assert upstream.requests == []


def test_landing_page_uses_proxy_prefix(proxy_client):
    response = proxy_client.get("/")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "'/proxy/' + encodeURIComponent(u)" in response.text


def test_metrics_exposed(proxy_client):
    proxy_client.get("/healthz")

    response = proxy_client.get("/metrics")

    assert response.status_code == 200
    assert "fastapi_app_info" in response.text


def test_access_log_line(proxy_client, caplog):
    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        proxy_client.get("/healthz")

    lines = [r.getMessage() for r in caplog.records if r.name == "uvicorn.error"]
    assert any(line.startswith("GET /healthz 200 2 - ") for line in lines)
    assert any(line.endswith(" ms") for line in lines)


def test_access_log_for_rejected_target(proxy_client, caplog):
    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        proxy_client.get("/proxy/")

    lines = [r.getMessage() for r in caplog.records]
    assert any(line.startswith("GET /proxy/ 400 ") for line in lines)


class TestFilteringSpanExporter:
    def test_body_spans_dropped(self):
        inner = Mock()
        inner.export.return_value = SpanExportResult.SUCCESS
        body_span = Mock(attributes={"asgi.event.type": "http.response.body"})
        request_span = Mock(attributes={"proxy.method": "GET"})

        result = FilteringSpanExporter(inner).export([body_span, request_span])

        assert result == SpanExportResult.SUCCESS
        inner.export.assert_called_once_with([request_span])

    def test_nothing_exported_when_all_filtered(self):
        inner = Mock()
        body_span = Mock(attributes={"asgi.event.type": "http.response.body"})

        result = FilteringSpanExporter(inner).export([body_span])

        assert result == SpanExportResult.SUCCESS
        inner.export.assert_not_called()

    def test_shutdown_and_flush_delegated(self):
        inner = Mock()
        exporter = FilteringSpanExporter(inner)

        exporter.shutdown()
        exporter.force_flush(1000)

        inner.shutdown.assert_called_once_with()
        inner.force_flush.assert_called_once_with(1000)
