"""Pydantic models used by the pipe proxy service."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ProxyReason(str, Enum):
    """Why a proxy request ended the way it did; sent as ``x-proxy-reason``."""
    PASS_THROUGH = "pass-through"
    M3U8_REWRITE = "m3u8-rewrite"
    RANGE_SYNTHESIZED = "range-synthesized"
    ORIGIN_BLOCKED = "origin-blocked"
    MISSING_PARAM = "missing-param"
    INVALID_URL = "invalid-url"
    SSRF_BLOCKED = "ssrf-blocked"
    FETCH_ERROR = "fetch-error"
    UPSTREAM_ERROR = "upstream-error"
    SIZE_LIMIT = "size-limit"

    @property
    def is_success(self) -> bool:
        return self in (ProxyReason.PASS_THROUGH, ProxyReason.M3U8_REWRITE, ProxyReason.RANGE_SYNTHESIZED)


class ValidationResult(BaseModel):
    """Outcome of an SSRF check for a single hop."""

    valid: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def reject(cls, reason: str) -> "ValidationResult":
        return cls(valid=False, reason=reason)


class ClientHints(BaseModel):
    """Request values the client supplied that shape the upstream headers."""

    range: Optional[str] = None
    referer: Optional[str] = None
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None


class DohAnswer(BaseModel):
    """One record of a DNS-over-HTTPS JSON answer section."""

    type: int
    data: str


class DohResponse(BaseModel):
    """Shape returned by DoH resolvers speaking ``application/dns-json``."""

    answer: list[DohAnswer] = Field(default_factory=list, alias="Answer")


class ErrorBody(BaseModel):
    """JSON body returned with every rejection."""

    error: str
    detail: Optional[str] = None
