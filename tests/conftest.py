# tests/conftest.py
from typing import Callable, Iterable, Optional

import httpx
import pytest
from fastapi import FastAPI

from pipe_proxy.api.routes import router
from pipe_proxy.core.config import Settings
from pipe_proxy.services.ssrf import SSRFValidator
from pipe_proxy.services.upstream import UpstreamFetcher

PUBLIC_IP = "93.184.216.34"

# --- helpers ---------------------------------------------------------------

class FakeResolver:
    """Answers from a fixed table and counts lookups per hostname."""
    def __init__(self, answers: Optional[dict] = None):
        self.answers = answers or {}
        self.calls: list[str] = []

    async def resolve(self, hostname: str) -> list[str]:
        self.calls.append(hostname)
        return list(self.answers.get(hostname, []))


def make_fetcher(
    handler: Callable[[httpx.Request], httpx.Response],
    answers: Optional[dict] = None,
    trusted_hosts: Iterable[str] = (),
) -> tuple[UpstreamFetcher, FakeResolver]:
    resolver = FakeResolver(answers if answers is not None else {})
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)
    return UpstreamFetcher(client, SSRFValidator(resolver, trusted_hosts)), resolver


def make_app(handler, answers: Optional[dict] = None, **overrides) -> FastAPI:
    """A proxy app wired to a mock upstream instead of the network."""
    app = FastAPI()
    app.include_router(router)
    fetcher, _ = make_fetcher(handler, answers, overrides.get("trusted_hosts", ()))
    app.state.fetcher = fetcher
    app.state.settings = Settings(**overrides)
    return app


def asgi_client(app: FastAPI, base_url: str = "http://proxy.test") -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=base_url)


class TrackedBody:
    """Async body stream that records how many chunks were pulled."""
    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks
        self.pulled = 0

    async def __aiter__(self):
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk


def chunked(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]

# --- fixtures --------------------------------------------------------------

@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def payload() -> bytes:
    return bytes(i % 251 for i in range(1000))
