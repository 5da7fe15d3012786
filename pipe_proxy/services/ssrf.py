"""SSRF validation for proxy targets and every redirect hop.

A URL is judged on what its hostname resolves to at the moment of the check,
so the validator must run immediately before each fetch of a hop and its
answer is never cached.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol
from urllib.parse import urlsplit

from pipe_proxy.core.logging import log_event
from pipe_proxy.models.schemas import ValidationResult
from pipe_proxy.services.classifier import is_hostname_disallowed, is_literal_ip, is_private_ip

log = logging.getLogger("pipe.ssrf")

ALLOWED_SCHEMES = ("http", "https")


class Resolver(Protocol):
    """Anything that can turn a hostname into its current address set."""

    async def resolve(self, hostname: str) -> list[str]:
        ...


def is_trusted_host(hostname: str, trusted_hosts: Optional[Iterable[str]]) -> bool:
    """Suffix match of ``hostname`` against the trusted list (exact or ``*.suffix``)."""
    if not trusted_hosts:
        return False
    host = hostname.lower()
    for trusted in trusted_hosts:
        suffix = trusted.lower().lstrip("*").lstrip(".")
        if suffix and (host == suffix or host.endswith("." + suffix)):
            return True
    return False


class SSRFValidator:
    """Decide whether a URL is safe to fetch right now."""

    def __init__(self, resolver: Resolver, trusted_hosts: Optional[Iterable[str]] = None):
        self._resolver = resolver
        self._trusted_hosts = list(trusted_hosts or [])

    async def validate(self, url: str) -> ValidationResult:
        try:
            parts = urlsplit(url)
            hostname = parts.hostname or ""
        except ValueError:
            return ValidationResult.reject("Invalid URL")

        if parts.scheme.lower() not in ALLOWED_SCHEMES:
            return ValidationResult.reject("Invalid protocol")
        if not hostname:
            return ValidationResult.reject("Invalid URL")

        if is_hostname_disallowed(hostname):
            return ValidationResult.reject("Disallowed hostname")

        if is_literal_ip(hostname):
            if is_private_ip(hostname):
                return ValidationResult.reject("Private IP address")
            return ValidationResult.ok()

        addresses = await self._resolver.resolve(hostname)

        if not addresses:
            if is_trusted_host(hostname, self._trusted_hosts):
                log_event("warn", f"Trusted host DNS soft-fail: {hostname}", path=parts.path)
                return ValidationResult.ok()
            return ValidationResult.reject("DNS resolution failed")

        # Any private answer disqualifies the name (DNS rebinding)
        for addr in addresses:
            if is_private_ip(addr):
                log.warning("%s resolved to private address %s", hostname, addr)
                return ValidationResult.reject("Resolved to private IP")

        return ValidationResult.ok()
