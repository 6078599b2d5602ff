from prometheus_client import Counter, Info

from edge_gateway.vars import SERVICE_NAME

app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

UPSTREAM_RETRIES = Counter(
    "gateway_upstream_retries_total",
    "Outbound attempts that were retried",
    ["reason"],
)

CLIENT_DISCONNECTS = Counter(
    "gateway_client_disconnects_total",
    "Requests abandoned because the client went away",
    ["stage"],
)
