import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from opentelemetry import trace

from edge_gateway.metrics import UPSTREAM_RETRIES
from edge_gateway.proxy.config import RetryPolicy
from edge_gateway.proxy.context import CancellationSignal
from edge_gateway.proxy.errors import DispatchError
from edge_gateway.utils.exception_logging import format_exception_message

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class OutboundRequest:
    """Fully built upstream call, replayed unchanged on every attempt."""

    method: str
    url: str
    headers: httpx.Headers
    body: Optional[bytes] = None


class RetryingDispatcher:
    """
    Sends one ``OutboundRequest`` with bounded retries and exponential backoff.

    Transport failures and 5xx responses are retried while attempts remain.
    A 5xx on the final attempt is returned as a normal response; a transport
    failure on the final attempt becomes a ``DispatchError``. Cancellation is
    never retried.
    """

    def __init__(self, client: httpx.AsyncClient, policy: RetryPolicy):
        self._client = client
        self.policy = policy

    async def dispatch(
        self,
        outbound: OutboundRequest,
        signal: CancellationSignal,
        request_id: str = "-",
    ) -> httpx.Response:
        total = self.policy.total_attempts
        span = trace.get_current_span()

        for attempt in range(total):
            signal.raise_if_cancelled()
            span.set_attribute("proxy.attempts", attempt + 1)
            request = self._client.build_request(
                outbound.method,
                outbound.url,
                headers=outbound.headers,
                content=outbound.body,
            )

            try:
                response = await signal.guard(self._client.send(request, stream=True))
            except httpx.TransportError as e:
                message = format_exception_message(e)
                if attempt >= self.policy.max_retries:
                    logger.error(
                        f"[{request_id}] All {total} attempts failed. Last error: {message}"
                    )
                    raise DispatchError(message, attempts=attempt + 1) from e
                logger.warning(
                    f"[{request_id}] Attempt {attempt + 1}/{total} failed with error: "
                    f"{message}, will retry"
                )
                UPSTREAM_RETRIES.labels(reason="transport").inc()
                await self._backoff(attempt, signal, request_id)
                continue

            if 500 <= response.status_code < 600 and attempt < self.policy.max_retries:
                error_text = await self._drain(response, signal, request_id)
                logger.warning(
                    f"[{request_id}] Attempt {attempt + 1}/{total} failed with "
                    f"{response.status_code}, will retry. Error: {error_text}"
                )
                UPSTREAM_RETRIES.labels(reason="status").inc()
                await self._backoff(attempt, signal, request_id)
                continue

            if attempt > 0:
                logger.info(
                    f"[{request_id}] Request succeeded on attempt {attempt + 1}/{total}"
                )
            return response

        # range(total) always returns or raises above
        raise DispatchError("All retry attempts failed", attempts=total)

    async def _backoff(
        self, attempt: int, signal: CancellationSignal, request_id: str
    ) -> None:
        delay = self.policy.delay_for(attempt)
        logger.info(
            f"[{request_id}] Waiting {int(delay * 1000)}ms before retry "
            f"{attempt + 2}/{self.policy.total_attempts}"
        )
        await signal.sleep(delay)

    async def _drain(
        self, response: httpx.Response, signal: CancellationSignal, request_id: str
    ) -> str:
        """Read and release a response that will not be relayed."""
        try:
            body = await signal.guard(response.aread())
        except httpx.TransportError as e:
            logger.debug(f"[{request_id}] Could not drain discarded response: {e!r}")
            body = b""
        finally:
            await response.aclose()
        return body[:200].decode("utf-8", errors="replace")
