"""
Per-request state shared by the pipeline stages.

A ``RequestContext`` lives from request entry until the response body has
finished streaming. Its ``CancellationSignal`` is fired by the deployment
adapter when the inbound connection closes, and every awaiting stage
(outbound call, backoff delay, body read) races against it.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from edge_gateway.proxy.errors import Cancelled

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


class GatewayState(str, Enum):
    AUTHENTICATING = "authenticating"
    RESOLVING = "resolving"
    DISPATCHING = "dispatching"
    RELAYING = "relaying"
    DONE = "done"
    ERRORED = "errored"


@dataclass(frozen=True)
class InboundRequest:
    """Framework-neutral view of the request the gateway received."""

    method: str
    path: str
    query: str = ""
    headers: Tuple[Tuple[str, str], ...] = ()
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        found = None
        for key, value in self.headers:
            if key.lower() == wanted:
                found = value
        return found

    @property
    def carries_body(self) -> bool:
        return self.method.upper() not in ("GET", "HEAD")


class CancellationSignal:
    """One-shot flag raised when the client goes away."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()

    async def sleep(self, delay: float) -> None:
        """Wait ``delay`` seconds, raising ``Cancelled`` as soon as the signal fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise Cancelled()

    def waiter(self) -> "asyncio.Future[bool]":
        """Future resolved when the signal fires; the caller cancels it when done."""
        return asyncio.ensure_future(self.wait())

    async def guard(
        self,
        awaitable: Awaitable[T],
        waiter: Optional["asyncio.Future[bool]"] = None,
    ) -> T:
        """
        Await ``awaitable`` unless the signal fires first.

        When the signal wins the pending operation is cancelled and awaited
        before ``Cancelled`` is raised, so no work outlives the request.
        A long-lived ``waiter`` from ``waiter()`` can be shared across many
        guarded calls; otherwise a waiter is created for this call only.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled()

        task = asyncio.ensure_future(awaitable)
        own_waiter = waiter is None
        if own_waiter:
            waiter = self.waiter()
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if own_waiter:
                waiter.cancel()
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if task.cancelled():
            raise Cancelled()
        return task.result()


class RequestContext:
    def __init__(
        self,
        request_id: Optional[str] = None,
        signal: Optional[CancellationSignal] = None,
    ):
        self.request_id = request_id or uuid.uuid4().hex[:8]
        self.started_at = time.time()
        self._started = time.perf_counter()
        self.signal = signal or CancellationSignal()
        self.state = GatewayState.AUTHENTICATING
        self._listeners: List[Callable[[], None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    def add_listener(self, release: Callable[[], None]) -> None:
        """Register a release callback for a cancellation listener."""
        if self._closed:
            release()
            return
        self._listeners.append(release)

    def transition(self, state: GatewayState) -> None:
        logger.debug(f"[{self.request_id}] {self.state.value} -> {state.value}")
        self.state = state

    def close(self) -> None:
        """Release every registered listener. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        listeners, self._listeners = self._listeners, []
        for release in listeners:
            release()
