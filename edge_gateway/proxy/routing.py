"""
Upstream routing resolution.

A request is routed by the first rule that applies:

1. query override: ``?upstream=<host-or-url>`` (invalid values are rejected),
2. path suffix: ``/<forward path>/<host>`` (invalid hosts fall through),
3. fixed: the prefix mapping table when one is configured, otherwise the
   single fixed base URL.

Paths are first normalized so that platform function-routing prefixes such
as ``/functions/v1/<name>`` never reach the upstream.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit

from edge_gateway.proxy.config import GatewayConfig
from edge_gateway.proxy.errors import NoRouteError, RoutingError

HOSTNAME_RE = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", re.IGNORECASE)
FUNCTIONS_PREFIX_RE = re.compile(r"^/functions/v1/[^/]+")

ACCEPTED_FORMS = (
    "/<path>/<allowed-host>",
    "/<path>?upstream=<allowed-host-or-https-url>",
    "/<mapping-prefix>/<path>",
)


class RoutingMode(str, Enum):
    FIXED = "fixed"
    QUERY_OVERRIDE = "query-override"
    PATH_SUFFIX = "path-suffix"


@dataclass(frozen=True)
class RoutingDecision:
    upstream_url: str
    forward_path: str
    forward_query: str
    mode: RoutingMode
    matched_prefix: Optional[str] = None

    @property
    def upstream_host(self) -> str:
        return urlsplit(self.upstream_url).netloc

    @property
    def prefix_mapped(self) -> bool:
        return self.matched_prefix is not None

    @property
    def route_key(self) -> Optional[str]:
        """Mapping prefix, or the first segment of the forward path."""
        if self.matched_prefix is not None:
            return self.matched_prefix
        segments = [s for s in self.forward_path.split("/") if s]
        return "/" + segments[0] if segments else None

    @property
    def target_url(self) -> str:
        parts = urlsplit(self.upstream_url)
        path = join_path(parts.path, self.forward_path)
        query = f"?{self.forward_query}" if self.forward_query else ""
        return f"{parts.scheme}://{parts.netloc}{path}{query}"


def join_path(base_path: str, request_path: str) -> str:
    left = (base_path or "/").rstrip("/")
    right = (request_path or "/").lstrip("/")
    if not right:
        return left or "/"
    return (left + "/" if left else "/") + right


def is_allowed_host(hostname: str, allowed_suffixes: Iterable[str]) -> bool:
    host = (hostname or "").strip().lower()
    if not host or not HOSTNAME_RE.match(host):
        return False
    if ".." in host:
        return False
    return any(host.endswith(suffix) for suffix in allowed_suffixes)


def parse_upstream_candidate(
    raw_candidate: Optional[str], allowed_suffixes: Iterable[str]
) -> Optional[str]:
    """
    Turn a bare hostname or https URL into an upstream base URL.

    Returns None when the candidate is not https or its host is not allowed.
    """
    candidate = unquote((raw_candidate or "").strip())
    if not candidate:
        return None

    if "://" in candidate:
        parsed = urlsplit(candidate)
        if parsed.scheme.lower() != "https":
            return None
        if not is_allowed_host(parsed.hostname or "", allowed_suffixes):
            return None
        return f"https://{parsed.netloc.lower()}{parsed.path.rstrip('/')}"

    if not is_allowed_host(candidate, allowed_suffixes):
        return None
    return f"https://{candidate.lower()}"


def match_prefix(path: str, prefixes: Sequence[str]) -> Optional[str]:
    """Longest mapping prefix that matches ``path`` on a segment boundary."""
    for prefix in sorted(prefixes, key=len, reverse=True):
        stem = prefix.rstrip("/")
        if path == prefix or path.startswith(stem + "/"):
            return prefix
    return None


def _normalize_once(
    path: str, prefixes: Sequence[str], allowed_suffixes: Iterable[str]
) -> str:
    if prefixes and match_prefix(path, prefixes):
        return path

    match = FUNCTIONS_PREFIX_RE.match(path)
    if match:
        return path[match.end():] or "/"

    if not prefixes:
        return path

    # /<routing-name>/<prefix>/... or /<routing-name>
    segments = [s for s in path.split("/") if s]
    if not segments:
        return path
    # A lone segment naming an allowed host is a path-suffix address
    if len(segments) == 1 and parse_upstream_candidate(segments[0], allowed_suffixes):
        return path
    rest = "/" + "/".join(segments[1:])
    if rest == "/" or match_prefix(rest, prefixes):
        return rest
    return path


def normalize_path(
    path: str, prefixes: Sequence[str] = (), allowed_suffixes: Iterable[str] = ()
) -> str:
    """
    Strip deployment routing prefixes from an inbound path.

    ``/functions/v1/<name>`` is always removed. When mapping prefixes are
    configured an opaque leading segment is removed if what remains is a
    mapping prefix or the root. A segment that is itself a mapping prefix is
    never stripped, nor is a lone segment naming an allowed upstream host,
    and the result is a fixed point.
    """
    path = path or "/"
    if not path.startswith("/"):
        path = "/" + path
    while True:
        normalized = _normalize_once(path, prefixes, allowed_suffixes)
        if normalized == path:
            return path
        path = normalized


def _query_override(
    path: str, query: str, config: GatewayConfig
) -> Optional[RoutingDecision]:
    pairs = parse_qsl(query, keep_blank_values=True)
    values = [value for key, value in pairs if key == config.upstream_query_param]
    if not values:
        return None

    upstream_url = parse_upstream_candidate(values[0], config.allowed_suffixes)
    if upstream_url is None:
        raise RoutingError(
            f"invalid {config.upstream_query_param} query value; "
            "only https upstreams on allowed hosts are accepted"
        )
    remaining = [(k, v) for k, v in pairs if k != config.upstream_query_param]
    return RoutingDecision(
        upstream_url=upstream_url,
        forward_path=path or "/",
        forward_query=urlencode(remaining),
        mode=RoutingMode.QUERY_OVERRIDE,
    )


def _path_suffix(
    path: str, query: str, config: GatewayConfig
) -> Optional[RoutingDecision]:
    segments = [s for s in path.split("/") if s]
    if not segments:
        return None
    upstream_url = parse_upstream_candidate(segments[-1], config.allowed_suffixes)
    if upstream_url is None:
        return None
    return RoutingDecision(
        upstream_url=upstream_url,
        forward_path="/" + "/".join(segments[:-1]),
        forward_query=query,
        mode=RoutingMode.PATH_SUFFIX,
    )


def _prefix_mapping(path: str, query: str, config: GatewayConfig) -> RoutingDecision:
    prefix = match_prefix(path, config.mapping_prefixes)
    if prefix is None:
        raise NoRouteError("Not Found")

    base = config.upstream_mappings[prefix]
    forward_path = path[len(prefix.rstrip("/")):] or "/"

    # The normalizer can leave the upstream host embedded as a segment
    host = urlsplit(base).netloc
    if forward_path == f"/{host}":
        forward_path = "/"
    elif forward_path.startswith(f"/{host}/"):
        forward_path = forward_path[len(host) + 1:]

    return RoutingDecision(
        upstream_url=base,
        forward_path=forward_path,
        forward_query=query,
        mode=RoutingMode.FIXED,
        matched_prefix=prefix,
    )


def _fixed_base(path: str, query: str, config: GatewayConfig) -> RoutingDecision:
    raw = config.upstream_base_url.strip()
    if not raw:
        raise RoutingError(
            "no upstream found; use /<path>/<allowed-host> "
            f"or ?{config.upstream_query_param}=<allowed-host>"
        )
    parsed = urlsplit(raw)
    if not parsed.netloc:
        raise RoutingError("UPSTREAM_BASE_URL is invalid")
    if parsed.scheme.lower() != "https":
        raise RoutingError("UPSTREAM_BASE_URL must use https")
    return RoutingDecision(
        upstream_url=raw.rstrip("/"),
        forward_path=path or "/",
        forward_query=query,
        mode=RoutingMode.FIXED,
    )


def resolve(path: str, query: str, config: GatewayConfig) -> RoutingDecision:
    """
    Resolve the upstream for a request path and raw query string.

    Raises:
        RoutingError: the override is invalid or no upstream is configured.
        NoRouteError: mappings are configured but none matches the path.
    """
    path = normalize_path(path, config.mapping_prefixes, config.allowed_suffixes)
    query = query or ""

    decision = _query_override(path, query, config)
    if decision is None:
        decision = _path_suffix(path, query, config)
    if decision is None:
        if config.uses_prefix_mappings:
            decision = _prefix_mapping(path, query, config)
        else:
            decision = _fixed_base(path, query, config)
    return decision


def accepted_forms(config: GatewayConfig) -> List[str]:
    return [
        form.replace("upstream=", f"{config.upstream_query_param}=")
        for form in ACCEPTED_FORMS
    ]
