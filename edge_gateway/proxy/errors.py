"""
Error taxonomy for the forwarding pipeline.

Every failure the gateway reports to a client derives from ``GatewayError``
and knows its own HTTP status and stable ``code``/``type`` pair. Upstream 5xx
responses are not errors: they are relayed like any other response.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    status_code = 500
    code = "internal_server_error"
    error_type = "server_error"

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}


class AuthError(GatewayError):
    """The caller did not present the configured gateway token."""

    status_code = 401
    code = "invalid_gateway_token"
    error_type = "authentication_error"


class RoutingError(GatewayError):
    """Malformed or disallowed upstream reference, or no upstream at all."""

    status_code = 400
    code = "bad_routing"
    error_type = "invalid_request_error"


class NoRouteError(GatewayError):
    """No configured mapping prefix matched the request path."""

    status_code = 404
    code = "not_found"
    error_type = "invalid_request_error"


class DispatchError(GatewayError):
    """
    The upstream could not be reached after all retry attempts.

    The last transport exception is chained as ``__cause__``.
    """

    status_code = 500
    code = "internal_server_error"
    error_type = "server_error"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class Cancelled(GatewayError):
    """The inbound connection closed before the response completed."""

    # nginx-style "client closed request"
    status_code = 499
    code = "client_closed_request"
    error_type = "client_error"

    def __init__(self, message: str = "client disconnected"):
        super().__init__(message)
