from fastapi import APIRouter

from edge_gateway.vars import DIAGNOSTICS_ENABLED, DIAGNOSTICS_PATH
from edge_gateway.diagnostics.route import router as diagnostics_router
from edge_gateway.proxy.route import router as proxy_router

router = APIRouter()

# Include diagnostics router ahead of the catch-all so its prefix wins
if DIAGNOSTICS_ENABLED and DIAGNOSTICS_PATH:
    router.include_router(diagnostics_router)

# Include proxy router (matches every remaining path)
router.include_router(proxy_router)
