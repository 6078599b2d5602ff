from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export import SpanExportResult

from edge_gateway.proxy.route import set_gateway


@pytest.fixture(scope="module")
def test_client():
    from edge_gateway.server import app

    with TestClient(app) as client:
        yield client
    set_gateway(None)


def test_metrics_exposed(test_client):
    response = test_client.get("/metrics")

    assert response.status_code == 200
    assert "fastapi_app_info" in response.text


def test_unconfigured_gateway_reports_bad_routing(test_client):
    response = test_client.get("/v1/models")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "bad_routing"


class TestFilteringSpanExporter:
    """Tests for FilteringSpanExporter."""

    def _span(self, attributes):
        span = Mock()
        span.attributes = attributes
        return span

    def test_drops_response_body_spans(self):
        from edge_gateway.server import FilteringSpanExporter

        inner = Mock()
        inner.export.return_value = SpanExportResult.SUCCESS
        kept = self._span({"http.route": "/{path:path}"})
        dropped = self._span({"asgi.event.type": "http.response.body"})

        FilteringSpanExporter(inner).export([kept, dropped])

        inner.export.assert_called_once_with([kept])

    def test_nothing_left_to_export(self):
        from edge_gateway.server import FilteringSpanExporter

        inner = Mock()
        dropped = self._span({"asgi.event.type": "http.response.body"})

        result = FilteringSpanExporter(inner).export([dropped])

        assert result == SpanExportResult.SUCCESS
        inner.export.assert_not_called()
