"""Configuration for the pipe proxy service.

Provides strongly-typed settings using Pydantic and a loader from environment
variables with defaults suitable for local development.
"""

from __future__ import annotations

import os
from typing import cast

from pydantic import AnyUrl, BaseModel, ValidationError


DEFAULT_MAX_CONTENT_LENGTH = 5 * 1024 * 1024 * 1024  # 5GB
DEFAULT_DOH_URL = "https://cloudflare-dns.com/dns-query"
DEFAULT_CDN_PROXY_HOSTS = "workers.dev,corsproxy.io"


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Pydantic settings for the proxy service."""
    allowed_origins: list[str] = ["*"]
    trusted_hosts: list[str] = []
    max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH
    # Public base of this proxy; when unset the incoming request's base URL is used
    proxy_base_url: str | None = None
    doh_url: AnyUrl = cast(AnyUrl, DEFAULT_DOH_URL)
    request_timeout_s: float = 30.0
    cdn_proxy_hosts: list[str] = _split_csv(DEFAULT_CDN_PROXY_HOSTS)


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            allowed_origins=_split_csv(os.getenv("ALLOWED_ORIGINS")) or ["*"],
            trusted_hosts=_split_csv(os.getenv("TRUSTED_HOSTS")),
            max_content_length=int(os.getenv("MAX_CONTENT_LENGTH", str(DEFAULT_MAX_CONTENT_LENGTH))),
            proxy_base_url=os.getenv("PROXY_BASE_URL") or None,
            doh_url=cast(AnyUrl, os.getenv("DOH_URL", DEFAULT_DOH_URL)),
            request_timeout_s=float(os.getenv("REQUEST_TIMEOUT_S", "30.0")),
            cdn_proxy_hosts=_split_csv(os.getenv("CDN_PROXY_HOSTS", DEFAULT_CDN_PROXY_HOSTS)),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


settings = load_settings()
