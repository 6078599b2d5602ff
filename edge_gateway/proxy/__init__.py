"""Request-forwarding core: routing, header sanitization, retrying dispatch and relay."""

from .config import GatewayConfig, RetryPolicy, RouteProfile, load_config
from .context import CancellationSignal, GatewayState, InboundRequest, RequestContext
from .errors import (
    AuthError,
    Cancelled,
    DispatchError,
    GatewayError,
    NoRouteError,
    RoutingError,
)
from .gateway import Gateway

__all__ = [
    "GatewayConfig",
    "RetryPolicy",
    "RouteProfile",
    "load_config",
    "CancellationSignal",
    "GatewayState",
    "InboundRequest",
    "RequestContext",
    "AuthError",
    "Cancelled",
    "DispatchError",
    "GatewayError",
    "NoRouteError",
    "RoutingError",
    "Gateway",
]
