"""Response assembly for the video proxy.

Runs a single proxy request end to end: parse and fetch the target, then route
the upstream response to the manifest rewriter, the range synthesizer, or a
plain streaming pass-through. Every path returns a response tagged with its
ProxyReason.
"""
from __future__ import annotations

import logging
from typing import AsyncIterator, Dict, Mapping, NamedTuple, Optional
from urllib.parse import urlsplit

import httpx
from fastapi import Response
from fastapi.responses import JSONResponse, StreamingResponse

from pipe_proxy.core.config import Settings
from pipe_proxy.core.logging import log_event
from pipe_proxy.models.schemas import ClientHints, ErrorBody, ProxyReason
from pipe_proxy.services.headers import build_forward_headers, checked_port
from pipe_proxy.services.manifest import MAX_MANIFEST_SIZE, headers_token, is_manifest, rewrite_manifest
from pipe_proxy.services.ranges import parse_range, synthesize_range
from pipe_proxy.services.upstream import RedirectLimitExceeded, SSRFBlockedError, UpstreamFetcher, close_quietly

log = logging.getLogger("pipe.proxy")

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
MANIFEST_CACHE_CONTROL = "public, max-age=300"
DEFAULT_CACHE_CONTROL = "public, max-age=3600"


class ProxyResult(NamedTuple):
    response: Response
    reason: ProxyReason
    upstream_status: Optional[int] = None


def parse_target_url(raw: str) -> str:
    """Return ``raw`` if it is an absolute URL; raise ValueError otherwise."""
    parts = urlsplit(raw.strip())
    if not parts.scheme:
        raise ValueError("URL has no scheme")
    if parts.scheme.lower() in ("http", "https"):
        if not parts.hostname:
            raise ValueError("URL has no host")
        checked_port(parts)
    return raw.strip()


def _error(status: int, reason: ProxyReason, error: str, cors: Mapping[str, str], detail: Optional[str] = None) -> ProxyResult:
    body = ErrorBody(error=error, detail=detail).model_dump(exclude_none=True)
    headers = {**cors, "x-proxy-reason": reason.value}
    return ProxyResult(JSONResponse(body, status_code=status, headers=headers), reason)


def _content_length(headers: httpx.Headers) -> Optional[int]:
    try:
        return int(headers["content-length"])
    except (KeyError, ValueError):
        return None


async def _iter_upstream(upstream: httpx.Response, chunks: Optional[AsyncIterator[bytes]] = None) -> AsyncIterator[bytes]:
    try:
        async for chunk in chunks if chunks is not None else upstream.aiter_bytes():
            yield chunk
    finally:
        await upstream.aclose()


async def _replay(body: bytes) -> AsyncIterator[bytes]:
    yield body


def _pass_through(
    upstream: httpx.Response,
    headers: Dict[str, str],
    body: Optional[bytes] = None,
) -> ProxyResult:
    accept_ranges = upstream.headers.get("accept-ranges")
    if accept_ranges:
        headers["Accept-Ranges"] = accept_ranges
    headers["Cache-Control"] = upstream.headers.get("cache-control") or DEFAULT_CACHE_CONTROL
    content_range = upstream.headers.get("content-range")
    if content_range:
        headers["Content-Range"] = content_range
    headers["x-proxy-reason"] = ProxyReason.PASS_THROUGH.value

    stream = _replay(body) if body is not None else _iter_upstream(upstream)
    status = 206 if upstream.status_code == 206 else 200
    return ProxyResult(StreamingResponse(stream, status_code=status, headers=headers), ProxyReason.PASS_THROUGH)


async def _read_manifest(upstream: httpx.Response, limit: int) -> Optional[bytes]:
    """Buffer the playlist body; None once it grows past ``limit``."""
    body = bytearray()
    async for chunk in upstream.aiter_bytes():
        body += chunk
        if len(body) > limit:
            return None
    return bytes(body)


async def handle_proxy(
    target_param: Optional[str],
    hints: ClientHints,
    fetcher: UpstreamFetcher,
    proxy_base_url: str,
    cfg: Settings,
    cors: Mapping[str, str],
) -> ProxyResult:
    """Proxy ``target_param`` and build the outbound response."""
    if not target_param:
        return _error(400, ProxyReason.MISSING_PARAM, "Missing url parameter", cors)

    try:
        target = parse_target_url(target_param)
    except ValueError:
        return _error(400, ProxyReason.INVALID_URL, "Invalid URL", cors)

    forward_headers = build_forward_headers(target, hints, cfg.cdn_proxy_hosts)

    try:
        upstream = await fetcher.fetch(target, forward_headers)
    except SSRFBlockedError as e:
        log_event("warn", "SSRF validation failed", url=e.url[:200], hop=e.hop, detail=e.reason)
        if e.hop == 0:
            return _error(400, ProxyReason.SSRF_BLOCKED, "Invalid or disallowed URL", cors, detail=e.reason)
        return _error(502, ProxyReason.FETCH_ERROR, "Failed to fetch upstream video", cors, detail="Upstream fetch failed")
    except RedirectLimitExceeded as e:
        log_event("error", "Redirect limit exceeded", url=target[:200], limit=e.limit)
        return _error(502, ProxyReason.FETCH_ERROR, "Failed to fetch upstream video", cors, detail="Upstream fetch failed")
    except httpx.HTTPError as e:
        message = str(e) or type(e).__name__
        log_event("error", "Fetch error", url=target[:200], error=message)
        return _error(502, ProxyReason.FETCH_ERROR, "Failed to fetch upstream video", cors, detail=message)

    try:
        return await _respond(upstream, target, hints, proxy_base_url, cfg, cors)
    except BaseException:
        # Cancelled or failed before a response took ownership of the stream
        await close_quietly(upstream)
        raise


async def _respond(
    upstream: httpx.Response,
    target: str,
    hints: ClientHints,
    proxy_base_url: str,
    cfg: Settings,
    cors: Mapping[str, str],
) -> ProxyResult:
    status = upstream.status_code
    if not 200 <= status < 300:
        error_headers = {
            **cors,
            "x-proxy-reason": ProxyReason.UPSTREAM_ERROR.value,
            "x-proxy-origin-status": str(status),
        }
        content_type = upstream.headers.get("content-type")
        if content_type:
            error_headers["Content-Type"] = content_type
        response = StreamingResponse(_iter_upstream(upstream), status_code=status, headers=error_headers)
        return ProxyResult(response, ProxyReason.UPSTREAM_ERROR, status)

    content_length = _content_length(upstream.headers)
    if content_length is not None and content_length > cfg.max_content_length:
        await upstream.aclose()
        return _error(413, ProxyReason.SIZE_LIMIT, "File too large", cors)

    content_type = upstream.headers.get("content-type") or "application/octet-stream"
    headers: Dict[str, str] = {**cors, "Content-Type": content_type}

    body: Optional[bytes] = None
    if is_manifest(content_type, urlsplit(target).path):
        try:
            body = await _read_manifest(upstream, min(MAX_MANIFEST_SIZE, cfg.max_content_length))
        except httpx.HTTPError as e:
            message = str(e) or type(e).__name__
            log_event("error", "Fetch error", url=target[:200], error=message)
            return _error(502, ProxyReason.FETCH_ERROR, "Failed to fetch upstream video", cors, detail=message)
        finally:
            await upstream.aclose()
        if body is None:
            log_event("warn", "Manifest too large", url=target[:200])
            return _error(413, ProxyReason.SIZE_LIMIT, "File too large", cors)
        try:
            text = body.decode(upstream.charset_encoding or "utf-8", errors="replace")
            # Relative references resolve against the hop that served the manifest
            rewritten = rewrite_manifest(text, str(upstream.url), proxy_base_url, headers_token(target))
        except Exception:
            log.exception("manifest rewrite failed for %s", target[:200])
        else:
            headers.update({
                "Content-Type": MANIFEST_CONTENT_TYPE,
                "Cache-Control": upstream.headers.get("cache-control") or MANIFEST_CACHE_CONTROL,
                "x-proxy-reason": ProxyReason.M3U8_REWRITE.value,
            })
            response = Response(rewritten, status_code=200 if status == 206 else status, headers=headers)
            return ProxyResult(response, ProxyReason.M3U8_REWRITE)

    accept_ranges = upstream.headers.get("accept-ranges") or ""
    if body is None and hints.range and status == 200 and "bytes" in accept_ranges:
        window = parse_range(hints.range, content_length)
        if window is not None:
            headers.update({
                "Accept-Ranges": accept_ranges,
                "Cache-Control": upstream.headers.get("cache-control") or DEFAULT_CACHE_CONTROL,
                "Content-Range": window.content_range(str(content_length) if content_length is not None else None),
                "x-proxy-reason": ProxyReason.RANGE_SYNTHESIZED.value,
            })
            chunks = synthesize_range(upstream.aiter_bytes(), window)
            response = StreamingResponse(_iter_upstream(upstream, chunks), status_code=206, headers=headers)
            return ProxyResult(response, ProxyReason.RANGE_SYNTHESIZED)

    return _pass_through(upstream, headers, body)
