import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from edge_gateway.metrics import CLIENT_DISCONNECTS
from edge_gateway.proxy.context import RequestContext
from edge_gateway.proxy.errors import Cancelled

logger = logging.getLogger("uvicorn.error")


def response_has_body(status_code: int, method: str = "GET") -> bool:
    if method.upper() == "HEAD":
        return False
    return not (status_code < 200 or status_code in (204, 304))


def apply_headers(response: Response, headers: httpx.Headers) -> Response:
    """Copy every header value, keeping repeated headers such as set-cookie."""
    for name, value in headers.multi_items():
        response.headers.append(name, value)
    return response


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class StreamingRelay:
    """
    Pipes an upstream body to the client one chunk at a time.

    Each read races the request's cancellation signal, and a listener task
    closes the upstream if the client leaves while the stream is idle.
    ``aclose`` runs once no matter which path ends the stream.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        context: RequestContext,
        decode: bool = True,
    ):
        self.upstream = upstream
        self.context = context
        self.decode = decode
        self._reading = False
        self._finished = False
        listener = asyncio.ensure_future(self._close_on_cancel())
        context.add_listener(listener.cancel)

    @property
    def finished(self) -> bool:
        return self._finished

    async def stream(self) -> AsyncIterator[bytes]:
        request_id = self.context.request_id
        chunks = self.upstream.aiter_bytes() if self.decode else self.upstream.aiter_raw()
        signal = self.context.signal
        # One waiter serves every read of this stream
        waiter = signal.waiter()
        try:
            while not self._finished:
                self._reading = True
                try:
                    chunk = await signal.guard(_next_chunk(chunks), waiter)
                finally:
                    self._reading = False
                if chunk is None:
                    break
                yield chunk
        except Cancelled:
            CLIENT_DISCONNECTS.labels(stage="relay").inc()
            logger.info(f"[{request_id}] Stream aborted (client disconnected)")
        except asyncio.CancelledError:
            CLIENT_DISCONNECTS.labels(stage="relay").inc()
            logger.info(f"[{request_id}] Stream cancelled (client disconnected)")
            raise
        except httpx.HTTPError as e:
            logger.error(f"[{request_id}] Stream error: {e!r}")
        finally:
            waiter.cancel()
            await self.aclose()

    async def _close_on_cancel(self) -> None:
        await self.context.signal.wait()
        # An in-flight read observes the signal itself
        if not self._reading and not self._finished:
            CLIENT_DISCONNECTS.labels(stage="relay").inc()
            logger.info(
                f"[{self.context.request_id}] Client disconnected, closing upstream stream"
            )
            await self.aclose()

    async def aclose(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            await self.upstream.aclose()
        finally:
            self.context.close()
            logger.info(
                f"[{self.context.request_id}] Stream finished ({self.context.elapsed_ms}ms)"
            )


async def relay(
    upstream: httpx.Response,
    context: RequestContext,
    headers: httpx.Headers,
    method: str = "GET",
    decode: bool = True,
) -> Response:
    """
    Turn an upstream response into the client response.

    Bodiless responses are answered immediately and the context is closed;
    otherwise the body streams lazily through a ``StreamingRelay``.
    """
    if not response_has_body(upstream.status_code, method):
        try:
            await upstream.aclose()
        finally:
            context.close()
        return apply_headers(Response(status_code=upstream.status_code), headers)

    stream_relay = StreamingRelay(upstream, context, decode=decode)
    response = StreamingResponse(
        stream_relay.stream(),
        status_code=upstream.status_code,
        background=BackgroundTask(stream_relay.aclose),
    )
    return apply_headers(response, headers)
