"""API routes for the pipe proxy.

Exposes the proxy endpoint with its CORS preflight and a health probe. The
origin policy is enforced here before any target URL is looked at.
"""
from __future__ import annotations

from logging import getLogger
from typing import Awaitable, Callable, Optional

import anyio
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import Counter

from pipe_proxy.core.config import Settings, settings
from pipe_proxy.core.logging import log_event
from pipe_proxy.models.schemas import ClientHints, ErrorBody, ProxyReason
from pipe_proxy.services.cors import cors_headers, is_origin_allowed, preflight_headers
from pipe_proxy.services.proxy import ProxyResult, handle_proxy
from pipe_proxy.services.upstream import UpstreamFetcher

log = getLogger("pipe.api")
router = APIRouter()

REQUESTS = Counter("pipe_requests_total", "Total proxy requests by outcome", ["reason"])


def _get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or settings


def _get_fetcher(request: Request) -> UpstreamFetcher:
    """Return the UpstreamFetcher.

    Prefers the application-scoped instance placed on ``app.state`` during the
    lifespan. Falls back to building one when running outside the
    fully-initialized app context (e.g., tests, scripts).
    """
    fetcher: Optional[UpstreamFetcher] = getattr(request.app.state, "fetcher", None)
    if fetcher is None:
        fetcher = UpstreamFetcher.from_settings()
        request.app.state.fetcher = fetcher
    return fetcher


def _proxy_base_url(request: Request, cfg: Settings) -> str:
    return cfg.proxy_base_url or str(request.url_for("proxy"))


async def _until_disconnect(request: Request, work: Callable[[], Awaitable[ProxyResult]]) -> Optional[ProxyResult]:
    """Run ``work``, cancelling it if the client goes away first; None when it did."""
    result: Optional[ProxyResult] = None

    async with anyio.create_task_group() as tg:
        async def watch() -> None:
            while True:
                message = await request.receive()
                if message["type"] == "http.disconnect":
                    tg.cancel_scope.cancel()
                    return

        async def run() -> None:
            nonlocal result
            result = await work()
            tg.cancel_scope.cancel()

        tg.start_soon(watch)
        tg.start_soon(run)

    return result


@router.options("/", name="proxy_preflight")
@router.options("/proxy", name="proxy_path_preflight")
async def proxy_preflight(request: Request):
    cfg = _get_settings(request)
    return Response(status_code=204, headers=preflight_headers(request.headers.get("origin"), cfg.allowed_origins))


@router.get("/", name="proxy")
@router.get("/proxy", name="proxy_path")
async def proxy(request: Request, url: Optional[str] = None, referer: Optional[str] = None):
    """
    Fetch ``url`` on the caller's behalf and stream it back:
      - HLS playlists are rewritten so every segment comes back through here
      - ranges the origin ignores are cut out of the full body
      - everything else streams through untouched
    """
    cfg = _get_settings(request)
    origin = request.headers.get("origin")
    client_referer = request.headers.get("referer")
    cors = cors_headers(origin, cfg.allowed_origins)

    self_origin = f"{request.url.scheme}://{request.url.netloc}"
    if not is_origin_allowed(origin, client_referer, self_origin, request.url.hostname or "", cfg.allowed_origins):
        REQUESTS.labels(reason=ProxyReason.ORIGIN_BLOCKED.value).inc()
        log_event(
            "warn",
            "Origin/referer blocked",
            origin=origin,
            referer=client_referer,
            url=str(request.url),
            userAgent=request.headers.get("user-agent"),
        )
        body = ErrorBody(error="Forbidden: requests must originate from allowed origins")
        return JSONResponse(
            body.model_dump(exclude_none=True),
            status_code=403,
            headers={**cors, "x-proxy-reason": ProxyReason.ORIGIN_BLOCKED.value},
        )

    hints = ClientHints(
        range=request.headers.get("range"),
        referer=referer,
        user_agent=request.headers.get("user-agent"),
        accept_language=request.headers.get("accept-language"),
    )
    fetcher = _get_fetcher(request)
    proxy_base_url = _proxy_base_url(request, cfg)
    result = await _until_disconnect(
        request,
        lambda: handle_proxy(url, hints, fetcher, proxy_base_url, cfg, cors),
    )
    if result is None:
        log.info("client disconnected before upstream answered: %s", (url or "")[:200])
        return Response(status_code=499)

    REQUESTS.labels(reason=result.reason.value).inc()
    if not result.reason.is_success:
        log_event(
            "warn",
            "Proxy failure",
            testedUrl=url,
            proxyReason=result.reason.value,
            upstreamStatus=result.upstream_status,
        )
    else:
        log.info("%s %s", result.reason.value, (url or "")[:200])
    return result.response


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "pipe"}
