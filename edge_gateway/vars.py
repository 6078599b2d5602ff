import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "edge-gateway")


def _parse_mapping(raw: str) -> dict:
    mapping: dict = {}
    if not raw:
        return mapping
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" in entry:
            key, val = entry.split("=", 1)
            key = key.strip()
            val = val.strip()
            if key and val:
                mapping[key] = val
    return mapping


def _parse_list(raw: str) -> list:
    return [item.strip() for item in raw.split(",") if item.strip()]


# Prefix-keyed upstream table, e.g. "/openai=https://api.openai.com"
UPSTREAM_MAPPINGS = _parse_mapping(os.getenv("UPSTREAM_MAPPINGS", ""))
UPSTREAM_BASE_URL = os.getenv("UPSTREAM_BASE_URL", "").strip()
ALLOWED_UPSTREAM_SUFFIXES = os.getenv("ALLOWED_UPSTREAM_SUFFIXES", "")
UPSTREAM_QUERY_PARAM = os.getenv("UPSTREAM_QUERY_PARAM", "upstream")

GATEWAY_AUTH_TOKEN = os.getenv("GATEWAY_AUTH_TOKEN", "").strip()
GATEWAY_AUTH_HEADER = os.getenv("GATEWAY_AUTH_HEADER", "x-gateway-token").lower()

RETRY_MAX_RETRIES = int(os.getenv("RETRY_MAX_RETRIES", "3"))
RETRY_INITIAL_DELAY = float(os.getenv("RETRY_INITIAL_DELAY", "1.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "8.0"))
RETRY_BACKOFF_MULTIPLIER = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2.0"))

PROXY_TIMEOUT = float(os.getenv("PROXY_TIMEOUT", "300"))
DEFAULT_USER_AGENT = os.getenv("DEFAULT_USER_AGENT", "antigravity/1.104.0")

PASSTHROUGH_ROUTES = _parse_list(os.getenv("PASSTHROUGH_ROUTES", "/codex"))
FINGERPRINT_ROUTES = _parse_mapping(
    os.getenv("FINGERPRINT_ROUTES", "/codex=chatgpt-web")
)

STRIP_RESPONSE_CONTENT_ENCODING = (
    os.getenv("STRIP_RESPONSE_CONTENT_ENCODING", "true").lower() == "true"
)
SECURITY_RESPONSE_HEADERS = (
    os.getenv("SECURITY_RESPONSE_HEADERS", "true").lower() == "true"
)

DIAGNOSTICS_ENABLED = os.getenv("DIAGNOSTICS_ENABLED", "false").lower() == "true"
_diagnostics_path = os.getenv("DIAGNOSTICS_PATH", "/_gateway/inspect").strip().strip("/")
DIAGNOSTICS_PATH = f"/{_diagnostics_path}" if _diagnostics_path else ""

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
