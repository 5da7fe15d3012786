"""HLS manifest rewriting.

Rewrites segment, playlist, key and map URLs of an ``.m3u8`` playlist so a
player fetches every one of them back through this proxy.
"""
from __future__ import annotations

import re
from typing import Optional
from urllib.parse import parse_qs, quote, urlencode, urljoin, urlsplit, urlunsplit

from pipe_proxy.services.headers import EMBEDDED_HEADERS_PARAM, checked_port

MANIFEST_CONTENT_TYPES = (
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
)

# Upper bound on a playlist buffered for rewriting
MAX_MANIFEST_SIZE = 4 * 1024 * 1024

_URI_ATTR = re.compile(r'URI="([^"]+)"', re.IGNORECASE)
_LINE_SPLIT = re.compile(r"\r?\n")


def is_manifest(content_type: str, path: str) -> bool:
    """True for HLS playlists, by content type or by a ``.m3u8`` path."""
    lowered = (content_type or "").lower()
    return any(t in lowered for t in MANIFEST_CONTENT_TYPES) or ".m3u8" in path.lower()


def headers_token(url: str) -> Optional[str]:
    """The raw embedded-headers value carried by ``url``, if any."""
    values = parse_qs(urlsplit(url).query).get(EMBEDDED_HEADERS_PARAM)
    return values[0] if values else None


def _with_token(url: str, token: Optional[str]) -> str:
    if not token or headers_token(url) is not None:
        return url
    parts = urlsplit(url)
    extra = urlencode({EMBEDDED_HEADERS_PARAM: token})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def proxify(target_url: str, proxy_base_url: str, token: Optional[str] = None) -> str:
    """Wrap ``target_url`` as ``<proxy_base_url>?url=<encoded>``."""
    wrapped = quote(_with_token(target_url, token), safe="!~*'()")
    return f"{proxy_base_url}?url={wrapped}"


def _absolute(reference: str, base_url: str) -> str:
    """Resolve ``reference`` against ``base_url``; ValueError when the result is not a usable URL."""
    resolved = urljoin(base_url, reference)
    parts = urlsplit(resolved)
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"not an absolute URL: {reference!r}")
    checked_port(parts)
    return resolved


def rewrite_manifest(manifest: str, base_url: str, proxy_base_url: str, token: Optional[str] = None) -> str:
    """Rewrite every URL in ``manifest`` to go through the proxy.

    ``base_url`` is the URL the manifest was fetched from; relative references
    resolve against it. The embedded-headers ``token`` (taken from ``base_url``
    when not given) is copied onto every rewritten URL.
    """
    if token is None:
        token = headers_token(base_url)

    def wrap_uri(match: re.Match) -> str:
        uri = match.group(1)
        try:
            return f'URI="{proxify(_absolute(uri, base_url), proxy_base_url, token)}"'
        except ValueError:
            return match.group(0)

    out = []
    for line in _LINE_SPLIT.split(manifest):
        stripped = line.strip()
        if not stripped:
            out.append(line)
        elif stripped.startswith("#EXT-X-KEY") or stripped.startswith("#EXT-X-MAP"):
            out.append(_URI_ATTR.sub(wrap_uri, line, count=1))
        elif stripped.startswith("#"):
            out.append(line)
        else:
            try:
                out.append(proxify(_absolute(stripped, base_url), proxy_base_url, token))
            except ValueError:
                out.append(line)
    return "\n".join(out)
