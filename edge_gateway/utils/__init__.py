import hashlib
from typing import Optional

SECRET_HEADER_MARKERS = ("token", "api-key", "apikey", "secret")


def mask_token(text: str, token: str) -> str:
    return text.replace(token, f"{token[:4]}****") if token else text


def token_fingerprint(token: Optional[str]) -> str:
    """Provide a stable, low-leak token identifier for logs."""
    if not token:
        return "<empty>"
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]
    return f"len={len(token)} sha256={digest}"


def mask_header_value(name: str, value: str) -> str:
    """Redact credentials in a header value while keeping it recognisable."""
    key = (name or "").lower()
    raw = str(value or "")
    if key in ("authorization", "proxy-authorization"):
        scheme, _, credential = raw.partition(" ")
        if credential:
            if len(credential) <= 10:
                return f"{scheme} ***"
            return f"{scheme} {credential[:6]}...{credential[-4:]}"
        return "***" if len(raw) <= 10 else f"{raw[:6]}...{raw[-4:]}"
    if any(marker in key for marker in SECRET_HEADER_MARKERS):
        return "***" if len(raw) <= 10 else f"{raw[:4]}...{raw[-3:]}"
    return raw
