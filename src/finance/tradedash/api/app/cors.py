from typing import Dict, Optional
from urllib.parse import urlparse

from finance.tradedash.api.app.config import Settings

PUBLIC_PATHS = {"/api/health", "/api/info"}

ALLOWED_DEBUG_HOSTS = {
    "localhost",
    "127.0.0.1",
}


def is_allowed_origin(origin_value: str, settings: Settings) -> bool:
    if origin_value in settings.allowed_origins:
        return True
    if settings.debug:
        parsed = urlparse(origin_value)
        return parsed.scheme in ("http", "https") and parsed.hostname in ALLOWED_DEBUG_HOSTS
    return False


def get_cors_headers(
    origin_value: Optional[str], path: str, settings: Settings
) -> Dict[str, str]:
    """Return appropriate CORS headers based on origin and path."""
    headers = {
        "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "content-type, authorization, x-requested-with",
        "Vary": "Origin",
    }

    if origin_value and is_allowed_origin(origin_value, settings):
        headers["Access-Control-Allow-Origin"] = origin_value
        headers["Access-Control-Allow-Credentials"] = "true"
    elif path in PUBLIC_PATHS:
        headers["Access-Control-Allow-Origin"] = "*"

    return headers
