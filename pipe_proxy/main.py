"""Pipe proxy FastAPI application.

Creates the proxy service, wires routes, configures logging, and exposes the
Prometheus metrics endpoint.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pipe_proxy.api.routes import router
from pipe_proxy.core.config import settings
from pipe_proxy.core.logging import setup_logging
from pipe_proxy.services.resolver import DnsResolver
from pipe_proxy.services.ssrf import SSRFValidator
from pipe_proxy.services.upstream import UpstreamFetcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan.

    Initializes logging and the app-scoped UpstreamFetcher. One HTTPX client
    (connection pool) serves both DoH lookups and upstream fetches and lives for
    the duration of the app.
    """
    setup_logging()
    async with httpx.AsyncClient(
        timeout=settings.request_timeout_s,
        follow_redirects=False,
        headers={"Accept-Encoding": "identity"},
    ) as client:
        validator = SSRFValidator(DnsResolver.from_settings(client), settings.trusted_hosts)
        app.state.settings = settings
        app.state.fetcher = UpstreamFetcher(client, validator)
        yield


app = FastAPI(title="Pipe", version="0.1.0", lifespan=lifespan)
app.include_router(router)


@app.get("/metrics")
async def metrics(_: Request):
    """Prometheus exposition endpoint for proxy process metrics."""
    data = generate_latest()
    return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    uvicorn.run("pipe_proxy.main:app", host="0.0.0.0", port=8787)
