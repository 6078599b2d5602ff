"""
Gateway orchestrator.

Runs one inbound request through
``Authenticating -> Resolving -> Dispatching -> Relaying -> Done`` and turns
any ``GatewayError`` raised along the way into the client-facing response.
The body of a relayed response may still be streaming after the request
reaches ``Done``.
"""

import asyncio
import hmac
import logging
from typing import Optional

import httpx
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from opentelemetry import trace

from edge_gateway.metrics import CLIENT_DISCONNECTS
from edge_gateway.models import (
    ErrorDetail,
    ErrorResponse,
    LandingResponse,
    MappingsResponse,
)
from edge_gateway.proxy.config import GatewayConfig
from edge_gateway.proxy.context import GatewayState, InboundRequest, RequestContext
from edge_gateway.proxy.dispatcher import OutboundRequest, RetryingDispatcher
from edge_gateway.proxy.errors import (
    AuthError,
    Cancelled,
    DispatchError,
    GatewayError,
    NoRouteError,
    RoutingError,
)
from edge_gateway.proxy.headers import (
    sanitize_request_headers,
    sanitize_response_headers,
)
from edge_gateway.proxy.relay import relay
from edge_gateway.proxy.routing import (
    RoutingDecision,
    accepted_forms,
    normalize_path,
    resolve,
)
from edge_gateway.utils import token_fingerprint
from edge_gateway.utils.exception_logging import (
    find_exception_in_exception_groups,
    log_exception_with_details,
)
from edge_gateway.utils.traced_requests import traced_request

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

UPSTREAM_HEADER = "x-gateway-upstream"
ROUTING_MODE_HEADER = "x-gateway-routing-mode"

ROBOTS_TXT = "User-agent: *\nDisallow: /"


def error_response(
    error: GatewayError, config: Optional[GatewayConfig] = None
) -> Response:
    """Client-facing response for a pipeline failure."""
    if isinstance(error, Cancelled):
        return Response(status_code=error.status_code)
    if isinstance(error, NoRouteError):
        return PlainTextResponse(error.message, status_code=error.status_code)

    extra = dict(error.extra)
    if isinstance(error, RoutingError) and config is not None:
        extra.setdefault("accepted_forms", accepted_forms(config))
        extra.setdefault("allowed_suffixes", list(config.allowed_suffixes))
    body = ErrorResponse(
        error=ErrorDetail(
            message=error.message, type=error.error_type, code=error.code, **extra
        )
    )
    return JSONResponse(content=body.model_dump(), status_code=error.status_code)


class Gateway:
    def __init__(
        self, config: GatewayConfig, client: Optional[httpx.AsyncClient] = None
    ):
        self.config = config
        self._client = client
        self._dispatcher: Optional[RetryingDispatcher] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.proxy_timeout),
                follow_redirects=False,
            )
        return self._client

    @property
    def dispatcher(self) -> RetryingDispatcher:
        if self._dispatcher is None:
            self._dispatcher = RetryingDispatcher(self.client, self.config.retry_policy)
        return self._dispatcher

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def authenticate(self, inbound: InboundRequest, request_id: str = "-") -> None:
        required = self.config.auth_token
        if not required:
            return
        presented = (inbound.header(self.config.auth_header) or "").strip()
        if not hmac.compare_digest(presented.encode(), required.encode()):
            logger.warning(
                f"[{request_id}] Unauthorized request, presented token "
                f"{token_fingerprint(presented)}"
            )
            raise AuthError(f"unauthorized: missing or invalid {self.config.auth_header}")

    def landing_response(self, inbound: InboundRequest) -> Optional[Response]:
        """Informational endpoints served in prefix-mapping mode only."""
        if not self.config.uses_prefix_mappings:
            return None
        path = normalize_path(
            inbound.path, self.config.mapping_prefixes, self.config.allowed_suffixes
        )
        mappings = dict(self.config.upstream_mappings)
        if path in ("/", "", "/index.html"):
            body = LandingResponse(message="Edge Gateway", mappings=mappings)
            return JSONResponse(content=body.model_dump())
        if path == "/api/mappings":
            return JSONResponse(content=MappingsResponse(mappings=mappings).model_dump())
        if path == "/robots.txt":
            return PlainTextResponse(ROBOTS_TXT)
        return None

    def build_outbound(
        self, inbound: InboundRequest, decision: RoutingDecision
    ) -> OutboundRequest:
        profile = self.config.profile_for(decision.route_key, decision.prefix_mapped)
        headers = sanitize_request_headers(
            inbound.headers,
            upstream_host=decision.upstream_host,
            profile=profile,
            auth_header=self.config.auth_header,
            default_user_agent=self.config.default_user_agent,
        )
        return OutboundRequest(
            method=inbound.method,
            url=decision.target_url,
            headers=headers,
            body=inbound.body if inbound.carries_body else None,
        )

    async def handle(self, inbound: InboundRequest, context: RequestContext) -> Response:
        request_id = context.request_id
        query = f"?{inbound.query}" if inbound.query else ""
        with traced_request(
            tracer,
            operation="proxy_request",
            request_id=request_id,
            start_message=f"{inbound.method} {inbound.path}{query}",
            secret=self.config.auth_token,
            extra_attrs={"proxy.method": inbound.method},
        ) as span:
            try:
                response = await self._run(inbound, context, span)
            except GatewayError as e:
                response = self._fail(e, context)
            except asyncio.CancelledError:
                # The server cancelled the handler itself
                context.transition(GatewayState.ERRORED)
                context.close()
                logger.info(f"[{request_id}] Request handler cancelled")
                raise
            except Exception as e:
                cancelled = find_exception_in_exception_groups(e, Cancelled)
                if cancelled is None:
                    context.transition(GatewayState.ERRORED)
                    context.close()
                    span.set_attribute("proxy.state", context.state.value)
                    span.record_exception(e)
                    log_exception_with_details(logger, f"[{request_id}]", e)
                    raise
                response = self._fail(cancelled, context)
            span.set_attribute("proxy.state", context.state.value)
            span.set_attribute("proxy.status_code", response.status_code)
            return response

    async def _run(
        self, inbound: InboundRequest, context: RequestContext, span
    ) -> Response:
        context.transition(GatewayState.AUTHENTICATING)
        self.authenticate(inbound, context.request_id)

        context.transition(GatewayState.RESOLVING)
        landing = self.landing_response(inbound)
        if landing is not None:
            context.close()
            context.transition(GatewayState.DONE)
            return landing
        decision = resolve(inbound.path, inbound.query, self.config)
        span.set_attribute("proxy.routing_mode", decision.mode.value)
        span.set_attribute("proxy.upstream_host", decision.upstream_host)
        span.set_attribute("proxy.target_url", decision.target_url)
        logger.info(f"[{context.request_id}] -> {decision.target_url} ({decision.mode.value})")

        context.transition(GatewayState.DISPATCHING)
        outbound = self.build_outbound(inbound, decision)
        upstream = await self.dispatcher.dispatch(
            outbound, context.signal, context.request_id
        )
        logger.info(
            f"[{context.request_id}] {upstream.status_code} ({context.elapsed_ms}ms)"
        )

        context.transition(GatewayState.RELAYING)
        headers = sanitize_response_headers(
            upstream.headers,
            strip_content_encoding=self.config.strip_response_content_encoding,
            security_headers=self.config.security_response_headers,
        )
        headers[UPSTREAM_HEADER] = decision.upstream_host
        headers[ROUTING_MODE_HEADER] = decision.mode.value
        response = await relay(
            upstream,
            context,
            headers,
            method=inbound.method,
            decode=self.config.strip_response_content_encoding,
        )
        context.transition(GatewayState.DONE)
        return response

    def _fail(self, error: GatewayError, context: RequestContext) -> Response:
        request_id = context.request_id
        stage = context.state.value
        context.transition(GatewayState.ERRORED)
        context.close()
        trace.get_current_span().set_attribute("proxy.error", error.code)

        if isinstance(error, Cancelled):
            CLIENT_DISCONNECTS.labels(stage=stage).inc()
            logger.info(
                f"[{request_id}] Request aborted (client disconnected, {context.elapsed_ms}ms)"
            )
        elif isinstance(error, DispatchError):
            logger.error(
                f"[{request_id}] Error after all retries ({context.elapsed_ms}ms): {error.message}"
            )
        else:
            logger.info(f"[{request_id}] {error.status_code} {error.message}")
        return error_response(error, self.config)
