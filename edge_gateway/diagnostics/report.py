"""
Non-forwarding inspection of an inbound request.

The report is computed with the same normalizer, resolver and sanitizer the
forwarding core uses, so what it shows is what the gateway would send.
Credential-bearing header values are masked before they enter the report.
"""

import hashlib
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl

from edge_gateway.models import (
    ErrorDetail,
    InspectedHeaders,
    InspectedRequest,
    InspectedRouting,
    InspectionReport,
)
from edge_gateway.proxy.config import GatewayConfig, RouteProfile
from edge_gateway.proxy.context import InboundRequest
from edge_gateway.proxy.errors import GatewayError
from edge_gateway.proxy.headers import removed_header_names, sanitize_request_headers
from edge_gateway.proxy.routing import normalize_path, resolve
from edge_gateway.utils import mask_header_value

REPORT_MESSAGE = "Diagnostic report, no upstream was contacted"


def _inspect_routing(inbound: InboundRequest, config: GatewayConfig):
    try:
        decision = resolve(inbound.path, inbound.query, config)
    except GatewayError as e:
        error = ErrorDetail(message=e.message, type=e.error_type, code=e.code)
        return InspectedRouting(error=error), None, None

    profile = config.profile_for(decision.route_key, decision.prefix_mapped)
    routing = InspectedRouting(
        mode=decision.mode.value,
        upstream_url=decision.upstream_url,
        upstream_host=decision.upstream_host,
        forward_path=decision.forward_path,
        forward_query=decision.forward_query,
        target_url=decision.target_url,
        route_key=decision.route_key,
        passthrough=profile.passthrough,
        fingerprint=profile.fingerprint,
    )
    return routing, decision.upstream_host, profile


def build_report(
    inbound: InboundRequest,
    config: GatewayConfig,
    now: Optional[datetime] = None,
) -> InspectionReport:
    routing, upstream_host, profile = _inspect_routing(inbound, config)
    forwarded = sanitize_request_headers(
        inbound.headers,
        upstream_host=upstream_host,
        profile=profile or RouteProfile(),
        auth_header=config.auth_header,
        default_user_agent=config.default_user_agent,
    )

    request = InspectedRequest(
        method=inbound.method,
        path=inbound.path,
        normalized_path=normalize_path(
            inbound.path, config.mapping_prefixes, config.allowed_suffixes
        ),
        query=dict(parse_qsl(inbound.query, keep_blank_values=True)),
        content_type=inbound.header("content-type") or "",
        content_length_header=inbound.header("content-length") or "",
        body_bytes=len(inbound.body),
        body_sha256=hashlib.sha256(inbound.body).hexdigest(),
    )
    headers = InspectedHeaders(
        received={
            name.lower(): mask_header_value(name, value)
            for name, value in inbound.headers
        },
        would_forward={
            name: mask_header_value(name, value) for name, value in forwarded.items()
        },
        removed_by_cleaning=removed_header_names(inbound.headers, forwarded),
    )
    return InspectionReport(
        message=REPORT_MESSAGE,
        timestamp=(now or datetime.now(timezone.utc)).isoformat(),
        request=request,
        routing=routing,
        headers=headers,
    )
