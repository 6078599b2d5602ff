"""
Tests for the retrying dispatcher.

Upstreams are simulated with ``httpx.MockTransport``; backoff delays are
recorded instead of slept.
"""

import httpx
import pytest

from edge_gateway.proxy.config import RetryPolicy
from edge_gateway.proxy.context import CancellationSignal
from edge_gateway.proxy.dispatcher import OutboundRequest, RetryingDispatcher
from edge_gateway.proxy.errors import Cancelled, DispatchError


class RecordingSignal(CancellationSignal):
    """Cancellation signal that records backoff delays without waiting."""

    def __init__(self, cancel_on_sleep: bool = False):
        super().__init__()
        self.delays = []
        self.cancel_on_sleep = cancel_on_sleep

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        if self.cancel_on_sleep:
            self.cancel()
        self.raise_if_cancelled()


def scripted_transport(outcomes, seen=None):
    """Replay ``outcomes`` in order: status codes or exceptions to raise."""
    remaining = list(outcomes)

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, content=f"status {outcome}".encode())

    return httpx.MockTransport(handler)


@pytest.fixture
def outbound():
    return OutboundRequest(
        method="POST",
        url="https://api.openai.com/v1/chat/completions",
        headers=httpx.Headers({"content-type": "application/json"}),
        body=b'{"model":"gpt"}',
    )


@pytest.fixture
def policy():
    return RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=8.0)


class TestRetryingDispatcher:
    """Tests for RetryingDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, outbound, policy):
        seen = []
        async with httpx.AsyncClient(transport=scripted_transport([200], seen)) as client:
            signal = RecordingSignal()
            response = await RetryingDispatcher(client, policy).dispatch(outbound, signal)
            await response.aclose()

        assert response.status_code == 200
        assert len(seen) == 1
        assert signal.delays == []

    @pytest.mark.asyncio
    async def test_retries_5xx_with_backoff(self, outbound, policy):
        """Two 503s then a 200 wait initial and initial * multiplier."""
        seen = []
        transport = scripted_transport([503, 503, 200], seen)
        async with httpx.AsyncClient(transport=transport) as client:
            signal = RecordingSignal()
            response = await RetryingDispatcher(client, policy).dispatch(outbound, signal)
            await response.aclose()

        assert response.status_code == 200
        assert len(seen) == 3
        assert signal.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_body_is_replayed_on_every_attempt(self, outbound, policy):
        seen = []
        transport = scripted_transport([502, 200], seen)
        async with httpx.AsyncClient(transport=transport) as client:
            response = await RetryingDispatcher(client, policy).dispatch(
                outbound, RecordingSignal()
            )
            await response.aclose()

        assert [request.content for request in seen] == [outbound.body, outbound.body]

    @pytest.mark.asyncio
    async def test_last_5xx_is_returned(self, outbound, policy):
        """Exhausted 5xx retries relay the final upstream response."""
        seen = []
        transport = scripted_transport([503] * 4, seen)
        async with httpx.AsyncClient(transport=transport) as client:
            signal = RecordingSignal()
            response = await RetryingDispatcher(client, policy).dispatch(outbound, signal)
            body = await response.aread()

        assert response.status_code == 503
        assert body == b"status 503"
        assert len(seen) == 4
        assert signal.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_4xx_is_not_retried(self, outbound, policy):
        seen = []
        async with httpx.AsyncClient(transport=scripted_transport([429], seen)) as client:
            response = await RetryingDispatcher(client, policy).dispatch(
                outbound, RecordingSignal()
            )
            await response.aclose()

        assert response.status_code == 429
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_transport_error_recovers(self, outbound, policy):
        seen = []
        transport = scripted_transport([httpx.ConnectError("refused"), 200], seen)
        async with httpx.AsyncClient(transport=transport) as client:
            signal = RecordingSignal()
            response = await RetryingDispatcher(client, policy).dispatch(outbound, signal)
            await response.aclose()

        assert response.status_code == 200
        assert signal.delays == [1.0]

    @pytest.mark.asyncio
    async def test_transport_error_exhausts_retries(self, outbound):
        """The last transport failure becomes a DispatchError."""
        policy = RetryPolicy(max_retries=2, initial_delay=0.5, max_delay=8.0)
        errors = [httpx.ConnectError("refused") for _ in range(3)]
        async with httpx.AsyncClient(transport=scripted_transport(errors)) as client:
            signal = RecordingSignal()
            with pytest.raises(DispatchError) as exc_info:
                await RetryingDispatcher(client, policy).dispatch(outbound, signal)

        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 500
        assert "refused" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert signal.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retrying(self, outbound, policy):
        """No further attempt is made once the client disconnects mid-delay."""
        seen = []
        transport = scripted_transport([503, 200], seen)
        async with httpx.AsyncClient(transport=transport) as client:
            signal = RecordingSignal(cancel_on_sleep=True)
            with pytest.raises(Cancelled):
                await RetryingDispatcher(client, policy).dispatch(outbound, signal)

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_dispatch(self, outbound, policy):
        seen = []
        async with httpx.AsyncClient(transport=scripted_transport([200], seen)) as client:
            signal = RecordingSignal()
            signal.cancel()
            with pytest.raises(Cancelled):
                await RetryingDispatcher(client, policy).dispatch(outbound, signal)

        assert seen == []

    @pytest.mark.asyncio
    async def test_zero_retries_single_attempt(self, outbound):
        seen = []
        policy = RetryPolicy(max_retries=0)
        async with httpx.AsyncClient(transport=scripted_transport([500], seen)) as client:
            response = await RetryingDispatcher(client, policy).dispatch(
                outbound, RecordingSignal()
            )
            await response.aclose()

        assert response.status_code == 500
        assert len(seen) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
