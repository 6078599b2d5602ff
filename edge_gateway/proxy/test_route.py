"""
Tests for the FastAPI adapter of the forwarding core.
"""

import asyncio
from unittest.mock import Mock

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from edge_gateway.proxy.config import GatewayConfig, RetryPolicy
from edge_gateway.proxy.context import CancellationSignal
from edge_gateway.proxy.gateway import Gateway
from edge_gateway.proxy.route import (
    build_inbound,
    request_path,
    router,
    set_gateway,
    watch_disconnect,
)


@pytest.fixture
def upstream_requests():
    return []


@pytest.fixture
def client(upstream_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        return httpx.Response(
            200,
            content=b"upstream:" + request.url.path.encode(),
            headers={"content-type": "text/plain"},
        )

    config = GatewayConfig(
        upstream_mappings={"/openai": "https://api.openai.com"},
        auth_token="s3cret",
        retry_policy=RetryPolicy(max_retries=0),
    )
    gateway = Gateway(
        config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    set_gateway(gateway)

    app = FastAPI()
    app.include_router(router)
    with TestClient(app) as test_client:
        yield test_client
    set_gateway(None)


@pytest.fixture
def dynamic_client(upstream_requests):
    """Adapter without mappings or a fixed base, so only host addressing routes."""

    def handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        return httpx.Response(200, content=b"ok")

    config = GatewayConfig(retry_policy=RetryPolicy(max_retries=0))
    gateway = Gateway(
        config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    set_gateway(gateway)

    app = FastAPI()
    app.include_router(router)
    with TestClient(app) as test_client:
        yield test_client
    set_gateway(None)


AUTH = {"x-gateway-token": "s3cret"}


class TestProxyRoute:
    """Tests for the catch-all proxy route."""

    def test_get_is_forwarded(self, client, upstream_requests):
        response = client.get("/openai/v1/models?limit=2", headers=AUTH)

        assert response.status_code == 200
        assert response.text == "upstream:/v1/models"
        assert response.headers["x-gateway-upstream"] == "api.openai.com"
        assert str(upstream_requests[0].url) == "https://api.openai.com/v1/models?limit=2"

    def test_post_body_is_forwarded(self, client, upstream_requests):
        response = client.post(
            "/openai/v1/chat/completions",
            headers={**AUTH, "content-type": "application/json"},
            content=b'{"model":"gpt"}',
        )

        assert response.status_code == 200
        assert upstream_requests[0].method == "POST"
        assert upstream_requests[0].content == b'{"model":"gpt"}'

    def test_head_has_no_body(self, client):
        response = client.head("/openai/v1/models", headers=AUTH)

        assert response.status_code == 200
        assert response.content == b""

    def test_missing_token(self, client, upstream_requests):
        response = client.get("/openai/v1/models")

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "authentication_error"
        assert upstream_requests == []

    def test_landing_page(self, client):
        response = client.get("/", headers=AUTH)

        assert response.json() == {
            "message": "Edge Gateway",
            "mappings": {"/openai": "https://api.openai.com"},
        }

    def test_unmapped_path(self, client):
        response = client.get("/unknown/path", headers=AUTH)

        assert response.status_code == 404
        assert response.text == "Not Found"

    def test_encoded_hash_stays_in_path(self, client, upstream_requests):
        """An escaped '#' is forwarded escaped instead of cutting the path."""
        response = client.get("/openai/v1/files/a%23b", headers=AUTH)

        assert response.status_code == 200
        assert str(upstream_requests[0].url) == "https://api.openai.com/v1/files/a%23b"

    def test_encoded_question_mark_stays_in_path(self, client, upstream_requests):
        """An escaped '?' is not confused with the start of the query."""
        response = client.get("/openai/v1/files/a%3Fb?x=1", headers=AUTH)

        assert response.status_code == 200
        assert str(upstream_requests[0].url) == (
            "https://api.openai.com/v1/files/a%3Fb?x=1"
        )

    def test_encoded_upstream_url_segment(self, dynamic_client, upstream_requests):
        """A percent-encoded https URL as the last segment selects the upstream."""
        response = dynamic_client.get("/v1/models/https%3A%2F%2Fmy-api.deno.dev")

        assert response.status_code == 200
        assert response.headers["x-gateway-routing-mode"] == "path-suffix"
        assert str(upstream_requests[0].url) == "https://my-api.deno.dev/v1/models"


class TestAdapterHelpers:
    """Tests for request_path, build_inbound and watch_disconnect."""

    def test_request_path_keeps_encoding(self):
        request = Mock(spec=Request)
        request.scope = {"raw_path": b"/openai/v1/files/a%23b"}

        assert request_path(request) == "/openai/v1/files/a%23b"

    def test_request_path_drops_query_from_raw_path(self):
        request = Mock(spec=Request)
        request.scope = {"raw_path": b"/v1/a%3Fb?x=1"}

        assert request_path(request) == "/v1/a%3Fb"

    def test_request_path_without_raw_path(self):
        request = Mock(spec=Request)
        request.scope = {}
        request.url.path = "/v1/models"

        assert request_path(request) == "/v1/models"

    @pytest.mark.asyncio
    async def test_build_inbound(self):
        request = Mock(spec=Request)
        request.scope = {"raw_path": b"/openai/v1/files"}
        request.method = "PUT"
        request.url.path = "/openai/v1/files"
        request.url.query = "purpose=batch"
        request.headers.items.return_value = [("content-type", "text/plain")]

        async def body():
            return b"payload"

        request.body = body

        inbound = await build_inbound(request)

        assert inbound.method == "PUT"
        assert inbound.path == "/openai/v1/files"
        assert inbound.query == "purpose=batch"
        assert inbound.headers == (("content-type", "text/plain"),)
        assert inbound.body == b"payload"

    @pytest.mark.asyncio
    async def test_watch_disconnect_fires_signal(self):
        messages = [
            {"type": "http.request", "body": b"", "more_body": False},
            {"type": "http.disconnect"},
        ]
        request = Mock(spec=Request)

        async def receive():
            return messages.pop(0)

        request.receive = receive
        signal = CancellationSignal()

        await asyncio.wait_for(watch_disconnect(request, signal), timeout=1)

        assert signal.cancelled


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
