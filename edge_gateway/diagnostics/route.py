import logging
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from edge_gateway.diagnostics.report import build_report
from edge_gateway.proxy.errors import AuthError
from edge_gateway.proxy.gateway import error_response
from edge_gateway.proxy.route import (
    PROXY_METHODS,
    build_inbound,
    get_gateway,
    request_path,
)
from edge_gateway.vars import DIAGNOSTICS_PATH

router = APIRouter(prefix=DIAGNOSTICS_PATH)
logger = logging.getLogger("uvicorn.error")


def inspected_path(request: Request, path: str) -> str:
    """Still-encoded path below the inspection prefix."""
    raw = request_path(request)
    if raw.startswith(DIAGNOSTICS_PATH + "/"):
        return raw[len(DIAGNOSTICS_PATH):]
    return "/" + path


@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def inspect_request(request: Request, path: str):
    """Report how ``/{path}`` would be routed and sanitized without forwarding it."""
    request_id = uuid.uuid4().hex[:8]
    gateway = get_gateway()
    inbound = await build_inbound(request, path=inspected_path(request, path))
    try:
        gateway.authenticate(inbound, request_id)
    except AuthError as e:
        return error_response(e)

    report = build_report(inbound, gateway.config)
    logger.info(
        f"[{request_id}] Inspected {inbound.method} {inbound.path} "
        f"({report.routing.mode or report.routing.error.code})"
    )
    return JSONResponse(
        content=report.model_dump(), headers={"cache-control": "no-store"}
    )
