"""
Immutable process-wide configuration for the forwarding core.

``load_config()`` reads the values parsed by ``edge_gateway.vars`` once and
freezes them. Request handling only ever reads a ``GatewayConfig``.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple

from edge_gateway import vars as gateway_vars

logger = logging.getLogger("uvicorn.error")

DEFAULT_ALLOWED_SUFFIXES: Tuple[str, ...] = (".deno.net", ".deno.dev")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for one outbound dispatch sequence.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        initial_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for any single delay, in seconds.
        backoff_multiplier: Growth factor applied per failed attempt.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 8.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.initial_delay < 0:
            raise ValueError("initial_delay cannot be negative")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be greater than 1")

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay after the zero-indexed failed ``attempt``, capped at ``max_delay``."""
        return min(
            self.initial_delay * (self.backoff_multiplier**attempt), self.max_delay
        )


@dataclass(frozen=True)
class RouteProfile:
    """How request headers are shaped for one route key."""

    passthrough: bool = False
    fingerprint: Optional[str] = None


@dataclass(frozen=True)
class GatewayConfig:
    upstream_mappings: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    upstream_base_url: str = ""
    allowed_suffixes: Tuple[str, ...] = DEFAULT_ALLOWED_SUFFIXES
    upstream_query_param: str = "upstream"
    auth_token: str = ""
    auth_header: str = "x-gateway-token"
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    proxy_timeout: float = 300.0
    default_user_agent: str = "antigravity/1.104.0"
    passthrough_routes: FrozenSet[str] = frozenset({"/codex"})
    fingerprint_routes: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({"/codex": "chatgpt-web"})
    )
    strip_response_content_encoding: bool = True
    security_response_headers: bool = True

    def __post_init__(self) -> None:
        for prefix, base in dict(self.upstream_mappings).items():
            if not base.lower().startswith("https://"):
                raise ValueError(f"Upstream for {prefix} must use https: {base}")
        # Callers may hand in plain dicts/lists; freeze them.
        object.__setattr__(
            self,
            "upstream_mappings",
            MappingProxyType(
                {
                    _normalize_prefix(prefix): base.rstrip("/")
                    for prefix, base in dict(self.upstream_mappings).items()
                }
            ),
        )
        object.__setattr__(
            self, "allowed_suffixes", normalize_allowed_suffixes(self.allowed_suffixes)
        )
        object.__setattr__(self, "auth_header", self.auth_header.lower())
        object.__setattr__(
            self,
            "passthrough_routes",
            frozenset(_normalize_prefix(r) for r in self.passthrough_routes),
        )
        object.__setattr__(
            self,
            "fingerprint_routes",
            MappingProxyType(
                {
                    _normalize_prefix(route): bundle
                    for route, bundle in dict(self.fingerprint_routes).items()
                }
            ),
        )

    @property
    def mapping_prefixes(self) -> Tuple[str, ...]:
        return tuple(self.upstream_mappings.keys())

    @property
    def uses_prefix_mappings(self) -> bool:
        return bool(self.upstream_mappings)

    def profile_for(self, route_key: Optional[str], prefix_mapped: bool) -> RouteProfile:
        """
        Resolve the header profile for a route key.

        Routes that did not come from a prefix mapping forward the full
        header set unless configured otherwise.
        """
        passthrough = not prefix_mapped or (
            route_key is not None and route_key in self.passthrough_routes
        )
        fingerprint = (
            self.fingerprint_routes.get(route_key) if route_key is not None else None
        )
        return RouteProfile(passthrough=passthrough, fingerprint=fingerprint)


def _normalize_prefix(prefix: str) -> str:
    prefix = prefix.strip()
    if not prefix.startswith("/"):
        prefix = "/" + prefix
    return prefix.rstrip("/") or "/"


def normalize_allowed_suffixes(raw) -> Tuple[str, ...]:
    """
    Normalize a comma-separated string or iterable of domain suffixes.

    Each entry is lowercased and prefixed with ``.`` when missing. An empty
    result falls back to the built-in defaults.
    """
    if isinstance(raw, str):
        items: Iterable[str] = raw.split(",") if raw.strip() else ()
    else:
        items = raw or ()
    normalized = []
    for item in items:
        value = item.strip().lower()
        if not value:
            continue
        normalized.append(value if value.startswith(".") else "." + value)
    return tuple(normalized) if normalized else DEFAULT_ALLOWED_SUFFIXES


def load_config() -> GatewayConfig:
    """Build the process configuration from the environment-derived settings."""
    config = GatewayConfig(
        upstream_mappings=gateway_vars.UPSTREAM_MAPPINGS,
        upstream_base_url=gateway_vars.UPSTREAM_BASE_URL,
        allowed_suffixes=gateway_vars.ALLOWED_UPSTREAM_SUFFIXES,
        upstream_query_param=gateway_vars.UPSTREAM_QUERY_PARAM,
        auth_token=gateway_vars.GATEWAY_AUTH_TOKEN,
        auth_header=gateway_vars.GATEWAY_AUTH_HEADER,
        retry_policy=RetryPolicy(
            max_retries=gateway_vars.RETRY_MAX_RETRIES,
            initial_delay=gateway_vars.RETRY_INITIAL_DELAY,
            max_delay=gateway_vars.RETRY_MAX_DELAY,
            backoff_multiplier=gateway_vars.RETRY_BACKOFF_MULTIPLIER,
        ),
        proxy_timeout=gateway_vars.PROXY_TIMEOUT,
        default_user_agent=gateway_vars.DEFAULT_USER_AGENT,
        passthrough_routes=frozenset(gateway_vars.PASSTHROUGH_ROUTES),
        fingerprint_routes=gateway_vars.FINGERPRINT_ROUTES,
        strip_response_content_encoding=gateway_vars.STRIP_RESPONSE_CONTENT_ENCODING,
        security_response_headers=gateway_vars.SECURITY_RESPONSE_HEADERS,
    )
    if config.uses_prefix_mappings:
        logger.info(f"Upstream mappings: {dict(config.upstream_mappings)}")
    elif config.upstream_base_url:
        logger.info(f"Fixed upstream: {config.upstream_base_url}")
    else:
        logger.info("No fixed upstream configured, dynamic routing only")
    logger.info(f"Allowed upstream suffixes: {', '.join(config.allowed_suffixes)}")
    return config
