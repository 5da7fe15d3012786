"""DNS-over-HTTPS resolver used by the SSRF validator.

Looks up A and AAAA records in parallel against a JSON DoH endpoint. Failures
never propagate: a record type that cannot be fetched or parsed contributes no
addresses, and an empty result means "resolution failed".
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import ValidationError

from pipe_proxy.core.config import settings
from pipe_proxy.core.logging import log_event
from pipe_proxy.models.schemas import DohResponse

log = logging.getLogger("pipe.dns")

RECORD_TYPES = {"A": 1, "AAAA": 28}


class DnsResolver:
    """
    Resolve hostnames through a DNS-over-HTTPS JSON API.

    Holds an httpx.AsyncClient for connection pooling; the client is shared with
    the upstream fetch engine when created by the application lifespan.
    """

    def __init__(self, client: httpx.AsyncClient, doh_url: str):
        self._client = client
        self._doh_url = doh_url

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient) -> "DnsResolver":
        return cls(client, str(settings.doh_url))

    async def _lookup(self, hostname: str, record_type: str) -> list[str]:
        try:
            resp = await self._client.get(
                self._doh_url,
                params={"name": hostname, "type": record_type},
                headers={"Accept": "application/dns-json"},
            )
            if resp.status_code != 200:
                log.warning("DoH non-200 (%s) for %s %s", resp.status_code, record_type, hostname)
                return []
            payload = DohResponse.model_validate(resp.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            log_event("error", "DoH resolution failed", hostname=hostname, record=record_type, error=str(e))
            return []

        wanted = RECORD_TYPES[record_type]
        return [answer.data for answer in payload.answer if answer.type == wanted]

    async def resolve(self, hostname: str) -> list[str]:
        """Return the A and AAAA addresses of ``hostname`` in answer order, without duplicates."""
        results = await asyncio.gather(*(self._lookup(hostname, rt) for rt in RECORD_TYPES))
        addresses: list[str] = []
        for batch in results:
            for addr in batch:
                if addr not in addresses:
                    addresses.append(addr)
        return addresses
