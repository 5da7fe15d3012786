"""CORS headers and origin allow-listing for proxy responses."""
from __future__ import annotations

from typing import Optional, Sequence
from urllib.parse import urlsplit

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def cors_headers(origin: Optional[str], allowed_origins: Sequence[str]) -> dict[str, str]:
    """Access-control headers for a response to a request from ``origin``."""
    headers = {
        "Access-Control-Allow-Methods": "GET, OPTIONS",
        "Access-Control-Allow-Headers": "Range, Origin, Referer",
        "Access-Control-Expose-Headers": "Content-Range, Accept-Ranges, Content-Length",
        "Vary": "Origin, Range",
    }
    if origin and (origin in allowed_origins or "*" in allowed_origins):
        headers["Access-Control-Allow-Origin"] = origin
    elif allowed_origins:
        headers["Access-Control-Allow-Origin"] = allowed_origins[0]
    else:
        headers["Access-Control-Allow-Origin"] = "*"
    return headers


def preflight_headers(origin: Optional[str], allowed_origins: Sequence[str]) -> dict[str, str]:
    headers = cors_headers(origin, allowed_origins)
    headers["Access-Control-Max-Age"] = "86400"
    return headers


def _origin_of(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def is_origin_allowed(
    origin: Optional[str],
    referer: Optional[str],
    self_origin: str,
    self_host: str,
    allowed_origins: Sequence[str],
) -> bool:
    """Whether a request may use the proxy at all.

    Segment fetches made by a player from a rewritten manifest carry the proxy's
    own origin as referer; direct local hits carry neither header.
    """
    if "*" in allowed_origins:
        return True
    referer_origin = _origin_of(referer)
    request_origin = origin or referer_origin
    if request_origin and request_origin in allowed_origins:
        return True
    if referer_origin and referer_origin == self_origin:
        return True
    return not request_origin and self_host.strip("[]") in LOCAL_HOSTS
