"""Builds the header set sent to the upstream origin.

Referer and Origin are picked from an ordered list of candidate resolvers; the
first one that yields a well-formed absolute URL wins. Candidates that do not
parse are skipped, never repaired.
"""
from __future__ import annotations

import json
from typing import Callable, Iterable, Optional, Sequence
from urllib.parse import SplitResult, parse_qs, urlsplit

from pipe_proxy.models.schemas import ClientHints

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; PipeProxy/1.0)"
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"

# First path segments with these endings are files, not domains
FILE_EXTENSIONS = (
    ".m3u8", ".m3u", ".ts", ".m4s", ".mp4", ".m4v", ".m4a", ".mp3", ".aac",
    ".webm", ".mkv", ".mov", ".mpd", ".key", ".vtt", ".srt", ".jpg", ".jpeg",
    ".png", ".gif", ".webp", ".json", ".xml", ".html", ".js", ".php",
)

EMBEDDED_HEADERS_PARAM = "headers"

Candidate = Callable[[], Optional[str]]


def checked_port(parts: SplitResult) -> Optional[int]:
    """The explicit port of ``parts``; ValueError when it is non-numeric or out of range."""
    return parts.port


def absolute_url(value: object) -> Optional[str]:
    """Return ``value`` when it is an absolute http(s) URL with a host, else None."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parts = urlsplit(value)
        host = parts.hostname
        checked_port(parts)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not host:
        return None
    return value


def url_origin(url: str) -> str:
    parts = urlsplit(url)
    host = parts.netloc.rsplit("@", 1)[-1]
    return f"{parts.scheme}://{host}"


def embedded_headers(target_url: str) -> Optional[dict]:
    """Decode the JSON header map carried in the target URL's ``headers`` query param."""
    raw = parse_qs(urlsplit(target_url).query).get(EMBEDDED_HEADERS_PARAM)
    if not raw:
        return None
    try:
        parsed = json.loads(raw[0])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _pick(mapping: dict, *keys: str) -> Optional[str]:
    for key in keys:
        if mapping.get(key):
            return mapping[key]
    return None


def cdn_path_origin(target_url: str, cdn_proxy_hosts: Iterable[str]) -> Optional[str]:
    """Recover the origin site from ``https://<cdn-proxy>/<domain>/...`` style URLs."""
    parts = urlsplit(target_url)
    host = (parts.hostname or "").lower()
    if not any(host == h or host.endswith("." + h) for h in cdn_proxy_hosts):
        return None
    segment = parts.path.lstrip("/").split("/", 1)[0]
    if "." not in segment or segment.lower().endswith(FILE_EXTENSIONS):
        return None
    return absolute_url(f"https://{segment}")


def first_of(candidates: Sequence[Candidate]) -> Optional[str]:
    for candidate in candidates:
        value = absolute_url(candidate())
        if value:
            return value
    return None


def build_forward_headers(
    target_url: str,
    hints: ClientHints,
    cdn_proxy_hosts: Iterable[str] = (),
) -> dict[str, str]:
    """Derive the upstream request headers for ``target_url``."""
    headers = {
        "User-Agent": hints.user_agent or DEFAULT_USER_AGENT,
        "Accept": "*/*",
        "Accept-Language": hints.accept_language or DEFAULT_ACCEPT_LANGUAGE,
    }
    if hints.range:
        headers["Range"] = hints.range

    embedded = embedded_headers(target_url)
    cdn_origin = cdn_path_origin(target_url, cdn_proxy_hosts)
    client_referer = absolute_url(hints.referer)
    target_origin = url_origin(target_url)

    embedded_referer = absolute_url(_pick(embedded, "referer", "Referer")) if embedded else None

    referer = first_of([
        lambda: embedded_referer,
        lambda: f"{cdn_origin}/" if cdn_origin else None,
        lambda: client_referer,
        lambda: f"{target_origin}/",
    ])
    if referer:
        headers["Referer"] = referer

    explicit_origin = absolute_url(_pick(embedded, "origin", "Origin")) if embedded else None
    if explicit_origin:
        headers["Origin"] = explicit_origin
    elif not embedded_referer:
        # An embedded referer without an origin means the site did not ask for one
        origin = first_of([
            lambda: cdn_origin,
            lambda: url_origin(client_referer) if client_referer else None,
            lambda: target_origin,
        ])
        if origin:
            headers["Origin"] = origin

    return headers
