"""Upstream fetch engine.

Follows redirects by hand so that every hop is re-validated against SSRF
before it is requested, and retries a hop once when the origin answers with a
status that usually means "these headers were blocked".
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional
from urllib.parse import urljoin

import anyio
import anyio.lowlevel
import httpx
from prometheus_client import Counter, Histogram

from pipe_proxy.core.config import settings
from pipe_proxy.services.resolver import DnsResolver
from pipe_proxy.services.ssrf import SSRFValidator

log = logging.getLogger("pipe.upstream")

MAX_REDIRECTS = 5
REDIRECT_STATUSES = {301, 302, 303, 307, 308}
RETRY_STATUSES = {401, 403, 502, 503, 504}

REDIRECT_HOPS = Counter("pipe_upstream_redirects_total", "Redirect hops followed upstream")
RETRIES = Counter("pipe_upstream_retries_total", "Upstream retries issued", ["kind"])
FETCH_LATENCY = Histogram("pipe_upstream_fetch_seconds", "Time until upstream response headers arrive")


class UpstreamFetchError(Exception):
    """Base class for fetch failures that are not plain transport errors."""


class SSRFBlockedError(UpstreamFetchError):
    """A hop of the fetch was rejected by the SSRF validator."""

    def __init__(self, url: str, reason: Optional[str], hop: int):
        super().__init__(f"Blocked {url} at hop {hop}: {reason}")
        self.url = url
        self.reason = reason
        self.hop = hop


class RedirectLimitExceeded(UpstreamFetchError):
    """The redirect chain was longer than the hop limit."""

    def __init__(self, limit: int = MAX_REDIRECTS):
        super().__init__(f"Exceeded {limit} redirects")
        self.limit = limit


def _without(headers: Mapping[str, str], name: str) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() != name.lower()}


def _has(headers: Mapping[str, str], name: str) -> bool:
    return any(k.lower() == name.lower() for k in headers)


async def close_quietly(response: httpx.Response) -> None:
    """Close ``response`` even when the calling task is being cancelled."""
    with anyio.CancelScope(shield=True):
        await response.aclose()


def minimal_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """User-agent and Accept only, for the retry after a blocked response."""
    ua = next((v for k, v in headers.items() if k.lower() == "user-agent"), None)
    out = {"Accept": "*/*"}
    if ua:
        out["User-Agent"] = ua
    return out


class UpstreamFetcher:
    """
    Fetch a URL on the client's behalf with per-hop SSRF validation.

    Holds the shared httpx.AsyncClient and the validator. The returned response
    is streamed and not yet read; the caller owns it and must close it.
    """

    def __init__(self, client: httpx.AsyncClient, validator: SSRFValidator, max_redirects: int = MAX_REDIRECTS):
        self._client = client
        self._validator = validator
        self._max_redirects = max_redirects

    @classmethod
    def from_settings(cls) -> "UpstreamFetcher":
        """Construct a fetcher using global settings."""
        client = httpx.AsyncClient(
            timeout=settings.request_timeout_s,
            follow_redirects=False,
            headers={"Accept-Encoding": "identity"},
        )
        validator = SSRFValidator(DnsResolver.from_settings(client), settings.trusted_hosts)
        return cls(client, validator)

    async def _send(self, url: str, headers: Mapping[str, str]) -> httpx.Response:
        # Nothing goes out once the caller has been cancelled
        await anyio.lowlevel.checkpoint_if_cancelled()
        request = self._client.build_request("GET", url, headers=dict(headers))
        with FETCH_LATENCY.time():
            return await self._client.send(request, stream=True, follow_redirects=False)

    def _next_hop(self, response: httpx.Response, current: str) -> Optional[str]:
        if response.status_code not in REDIRECT_STATUSES:
            return None
        location = response.headers.get("location")
        if not location:
            return None
        return urljoin(current, location)

    async def fetch(self, url: str, headers: Mapping[str, str]) -> httpx.Response:
        """Return the final upstream response for ``url``.

        Raises SSRFBlockedError when any hop fails validation, RedirectLimitExceeded
        after too many redirects, and httpx.HTTPError on transport failures.
        """
        current = url
        hops = 0

        while True:
            result = await self._validator.validate(current)
            if not result.valid:
                raise SSRFBlockedError(current, result.reason, hops)

            response = await self._send(current, headers)
            try:
                # Some WAFs reject byte ranges that start mid-file
                if response.status_code == 403 and _has(headers, "Range"):
                    await response.aclose()
                    RETRIES.labels(kind="range").inc()
                    log.info("403 with Range on %s, retrying without it", current)
                    response = await self._send(current, _without(headers, "Range"))

                if response.status_code in RETRY_STATUSES:
                    await response.aclose()
                    RETRIES.labels(kind="minimal").inc()
                    log.info("upstream %s on %s, retrying with minimal headers", response.status_code, current)
                    response = await self._send(current, minimal_headers(headers))
            except BaseException:
                await close_quietly(response)
                raise

            target = self._next_hop(response, current)
            if target is None:
                return response

            await close_quietly(response)
            hops += 1
            if hops > self._max_redirects:
                raise RedirectLimitExceeded(self._max_redirects)
            REDIRECT_HOPS.inc()
            log.debug("redirect %d: %s -> %s", hops, current, target)
            current = target

    async def aclose(self) -> None:
        await self._client.aclose()
