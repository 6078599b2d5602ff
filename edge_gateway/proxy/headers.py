"""
Header sanitization for both legs of a forwarded request.

All tables in this module are read-only constants. Route-specific behaviour
(pass-through and browser fingerprinting) is selected through a
``RouteProfile`` rather than by inspecting the request.
"""

from types import MappingProxyType
from typing import Any, Iterable, List, Optional, Tuple

import httpx

from edge_gateway.proxy.config import RouteProfile

# Hop-by-hop headers (RFC 7230) plus framing headers recomputed by the transport
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# Edge/CDN metadata injected by the hosting platform
PLATFORM_HEADER_PREFIXES = ("cf-", "x-forwarded-")

# Network identity of the original caller or of the proxy chain
IDENTITY_HEADERS = frozenset(
    {
        "forwarded",
        "x-real-ip",
        "true-client-ip",
        "x-client-ip",
        "fastly-client-ip",
        "cdn-loop",
        "via",
    }
)

TRACING_HEADERS = frozenset(
    {
        "traceparent",
        "tracestate",
        "baggage",
        "x-cloud-trace-context",
        "x-amzn-trace-id",
    }
)

# Forwarded for routes that are not pass-through
FORWARD_ALLOW_HEADERS = frozenset(
    {
        "accept",
        "content-type",
        "authorization",
        "user-agent",
        "x-goog-api-client",
        "x-goog-api-key",
        "openai-organization",
        "openai-project",
    }
)

# Literal browser signatures, filled in only when the client did not send them
FINGERPRINT_BUNDLES = MappingProxyType(
    {
        "chatgpt-web": (
            ("accept-language", "en-US,en;q=0.9"),
            ("sec-fetch-site", "same-origin"),
            ("sec-fetch-mode", "cors"),
            ("sec-fetch-dest", "empty"),
            ("sec-ch-ua", '"Chromium";v="134", "Not:A-Brand";v="24"'),
            ("sec-ch-ua-mobile", "?0"),
            ("sec-ch-ua-platform", '"Windows"'),
            ("origin", "https://chatgpt.com"),
            ("referer", "https://chatgpt.com/"),
        ),
    }
)

DEFAULT_USER_AGENT = "antigravity/1.104.0"

RESPONSE_FRAMING_HEADERS = frozenset({"content-length", "transfer-encoding"})
RESPONSE_CONNECTION_HEADERS = frozenset({"connection", "keep-alive"})

SECURITY_RESPONSE_HEADERS = (
    ("x-content-type-options", "nosniff"),
    ("x-frame-options", "DENY"),
    ("referrer-policy", "no-referrer"),
)


def _iter_items(incoming: Any) -> Iterable[Tuple[str, str]]:
    if incoming is None:
        return ()
    if hasattr(incoming, "multi_items"):
        return incoming.multi_items()
    if hasattr(incoming, "items"):
        return incoming.items()
    return incoming


def is_platform_header(name: str) -> bool:
    """True for CDN metadata, caller identity and distributed tracing headers."""
    lower = name.lower()
    return (
        lower.startswith(PLATFORM_HEADER_PREFIXES)
        or lower in IDENTITY_HEADERS
        or lower in TRACING_HEADERS
    )


def sanitize_request_headers(
    incoming: Any,
    upstream_host: Optional[str],
    profile: Optional[RouteProfile] = None,
    auth_header: Optional[str] = None,
    default_user_agent: str = DEFAULT_USER_AGENT,
) -> httpx.Headers:
    """
    Build the header set sent to the upstream.

    Hop-by-hop headers, the gateway's own auth header and every platform,
    identity and tracing header are always removed. Unless the route is
    pass-through only ``FORWARD_ALLOW_HEADERS`` survive. ``Host`` is pinned to
    the upstream, a fallback ``User-Agent`` is supplied, and a fingerprint
    bundle is filled in when the profile names one.
    """
    profile = profile or RouteProfile()
    gateway_header = auth_header.lower() if auth_header else None

    headers = httpx.Headers()
    for name, value in _iter_items(incoming):
        headers[name] = value

    for name in list(headers.keys()):
        if name in HOP_BY_HOP_HEADERS or name == gateway_header:
            del headers[name]
        elif is_platform_header(name):
            del headers[name]
        elif not profile.passthrough and name not in FORWARD_ALLOW_HEADERS:
            del headers[name]

    if "user-agent" not in headers:
        headers["user-agent"] = default_user_agent

    if profile.fingerprint:
        for name, value in FINGERPRINT_BUNDLES.get(profile.fingerprint, ()):
            if name not in headers:
                headers[name] = value

    # Host goes last; re-sanitizing the result then yields the same order
    if upstream_host:
        headers["host"] = upstream_host

    return headers


def sanitize_response_headers(
    incoming: Any,
    strip_content_encoding: bool = True,
    security_headers: bool = False,
) -> httpx.Headers:
    """
    Build the header set returned to the client.

    The relay re-frames the body, so upstream ``content-length`` and
    ``transfer-encoding`` are dropped. ``content-encoding`` is dropped too
    when the relay forwards decoded bytes. Repeated headers such as
    ``set-cookie`` keep every value.
    """
    dropped = RESPONSE_FRAMING_HEADERS | RESPONSE_CONNECTION_HEADERS
    if strip_content_encoding:
        dropped = dropped | {"content-encoding"}

    headers = httpx.Headers(
        [
            (name, value)
            for name, value in _iter_items(incoming)
            if name.lower() not in dropped
        ]
    )
    return _with_security_headers(headers) if security_headers else headers


def _with_security_headers(headers: httpx.Headers) -> httpx.Headers:
    for name, value in SECURITY_RESPONSE_HEADERS:
        headers[name] = value
    return headers


def removed_header_names(before: Any, after: Any) -> List[str]:
    """Sorted names present in ``before`` but missing from ``after``."""
    kept = {name.lower() for name, _ in _iter_items(after)}
    return sorted(
        {name.lower() for name, _ in _iter_items(before)} - kept,
    )
