import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import Response

from edge_gateway.proxy.config import load_config
from edge_gateway.proxy.context import CancellationSignal, InboundRequest, RequestContext
from edge_gateway.proxy.gateway import Gateway

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

_gateway: Optional[Gateway] = None


def get_gateway() -> Gateway:
    global _gateway
    if _gateway is None:
        _gateway = Gateway(load_config())
    return _gateway


def set_gateway(gateway: Optional[Gateway]) -> None:
    global _gateway
    _gateway = gateway


async def shutdown_gateway() -> None:
    if _gateway is not None:
        await _gateway.aclose()


def request_path(request: Request) -> str:
    """Request path with its percent-encoding intact."""
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return request.url.path
    return raw_path.decode("latin-1").split("?", 1)[0]


async def build_inbound(request: Request, path: Optional[str] = None) -> InboundRequest:
    """Snapshot the Starlette request; the body is buffered so retries can replay it."""
    body = await request.body()
    return InboundRequest(
        method=request.method,
        path=path if path is not None else request_path(request),
        query=str(request.url.query),
        headers=tuple(request.headers.items()),
        body=body,
    )


async def watch_disconnect(request: Request, signal: CancellationSignal) -> None:
    """Fire ``signal`` when the ASGI server reports the client connection closed."""
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            signal.cancel()
            return


def open_context(request: Request) -> RequestContext:
    context = RequestContext()
    watcher = asyncio.ensure_future(watch_disconnect(request, context.signal))
    context.add_listener(watcher.cancel)
    return context


async def forward_to_upstream(request: Request) -> Response:
    inbound = await build_inbound(request)
    context = open_context(request)
    return await get_gateway().handle(inbound, context)


# Register catch-all route for proxying
@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_all(request: Request, path: str):
    """Catch-all route that forwards every request through the gateway."""
    return await forward_to_upstream(request)
