# tests/test_proxy_app.py
from urllib.parse import parse_qs, urlsplit

import anyio
import httpx
import pytest

import pipe_proxy.services.proxy as proxy_module

from conftest import PUBLIC_IP, TrackedBody, asgi_client, chunked, make_app

ANSWERS = {"media.example": [PUBLIC_IP], "evil.example": ["192.168.1.1"]}
MANIFEST = "#EXTM3U\n#EXT-X-KEY:METHOD=AES-128,URI=\"key.bin\"\n#EXTINF:4.0,\nseg1.ts\n"


def _ok(content=b"hello", **headers):
    return lambda request: httpx.Response(200, content=content, headers=headers)

# --- request validation ----------------------------------------------------

@pytest.mark.anyio
async def test_missing_url_param():
    async with asgi_client(make_app(_ok(), ANSWERS)) as client:
        resp = await client.get("/")
    assert resp.status_code == 400
    assert resp.headers["x-proxy-reason"] == "missing-param"
    assert resp.json() == {"error": "Missing url parameter"}


@pytest.mark.anyio
@pytest.mark.parametrize("target", ["not a url", "/relative/path", "https://", "http://host:notaport/"])
async def test_invalid_url(target):
    async with asgi_client(make_app(_ok(), ANSWERS)) as client:
        resp = await client.get("/", params={"url": target})
    assert resp.status_code == 400
    assert resp.headers["x-proxy-reason"] == "invalid-url"


@pytest.mark.anyio
@pytest.mark.parametrize("target,detail", [
    ("http://127.0.0.1/admin", "Private IP address"),
    ("http://localhost/", "Disallowed hostname"),
    ("ftp://media.example/file", "Invalid protocol"),
    ("https://evil.example/v.mp4", "Resolved to private IP"),
    ("https://unknown.example/v.mp4", "DNS resolution failed"),
])
async def test_ssrf_blocked(target, detail):
    def handler(request):
        raise AssertionError("upstream must not be contacted")

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": target})
    assert resp.status_code == 400
    assert resp.headers["x-proxy-reason"] == "ssrf-blocked"
    assert resp.json() == {"error": "Invalid or disallowed URL", "detail": detail}


@pytest.mark.anyio
async def test_trusted_host_dns_soft_fail():
    app = make_app(_ok(b"trusted"), ANSWERS, trusted_hosts=["flaky.example"])
    async with asgi_client(app) as client:
        resp = await client.get("/", params={"url": "https://edge.flaky.example/v.mp4"})
    assert resp.status_code == 200
    assert resp.content == b"trusted"

# --- fetch failures --------------------------------------------------------

@pytest.mark.anyio
async def test_transport_error_is_502_with_message():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/v.mp4"})
    assert resp.status_code == 502
    assert resp.headers["x-proxy-reason"] == "fetch-error"
    assert resp.json()["detail"] == "connection refused"


@pytest.mark.anyio
async def test_redirect_into_private_network_is_generic_502():
    def handler(request):
        return httpx.Response(302, headers={"location": "http://10.1.2.3/internal"})

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/v.mp4"})
    assert resp.status_code == 502
    assert resp.headers["x-proxy-reason"] == "fetch-error"
    assert "10.1.2.3" not in resp.text


@pytest.mark.anyio
async def test_redirect_loop_is_generic_502():
    def handler(request):
        return httpx.Response(302, headers={"location": "/again"})

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/loop"})
    assert resp.status_code == 502
    assert resp.json() == {"error": "Failed to fetch upstream video", "detail": "Upstream fetch failed"}


@pytest.mark.anyio
async def test_upstream_error_status_is_preserved():
    def handler(request):
        return httpx.Response(404, content=b"nope", headers={"content-type": "text/plain"})

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/missing.mp4"})
    assert resp.status_code == 404
    assert resp.headers["x-proxy-reason"] == "upstream-error"
    assert resp.headers["x-proxy-origin-status"] == "404"
    assert resp.content == b"nope"


@pytest.mark.anyio
async def test_size_limit_rejects_without_reading_body(payload):
    body = TrackedBody(chunked(payload, 100))

    def handler(request):
        return httpx.Response(200, content=body, headers={"content-length": str(len(payload))})

    app = make_app(handler, ANSWERS, max_content_length=500)
    async with asgi_client(app) as client:
        resp = await client.get("/", params={"url": "https://media.example/big.mp4"})
    assert resp.status_code == 413
    assert resp.headers["x-proxy-reason"] == "size-limit"
    assert resp.json() == {"error": "File too large"}
    assert body.pulled == 0

# --- success paths ---------------------------------------------------------

@pytest.mark.anyio
async def test_pass_through_streams_body_with_defaults():
    app = make_app(_ok(b"video-bytes", **{"content-type": "video/mp4", "accept-ranges": "bytes"}), ANSWERS)
    async with asgi_client(app) as client:
        resp = await client.get("/", params={"url": "https://media.example/v.mp4"}, headers={"Origin": "https://app.example"})
    assert resp.status_code == 200
    assert resp.content == b"video-bytes"
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.headers["accept-ranges"] == "bytes"
    assert resp.headers["cache-control"] == "public, max-age=3600"
    assert resp.headers["x-proxy-reason"] == "pass-through"
    assert resp.headers["access-control-allow-origin"] == "https://app.example"


@pytest.mark.anyio
async def test_partial_content_from_origin_passes_through():
    def handler(request):
        assert request.headers["range"] == "bytes=0-3"
        return httpx.Response(206, content=b"abcd", headers={"content-range": "bytes 0-3/10", "cache-control": "no-store"})

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/v.mp4"}, headers={"Range": "bytes=0-3"})
    assert resp.status_code == 206
    assert resp.headers["content-range"] == "bytes 0-3/10"
    assert resp.headers["cache-control"] == "no-store"
    assert resp.headers["x-proxy-reason"] == "pass-through"


@pytest.mark.anyio
async def test_range_is_synthesized_when_origin_ignores_it(payload):
    def handler(request):
        return httpx.Response(
            200,
            content=TrackedBody(chunked(payload, 100)),
            headers={"content-length": str(len(payload)), "accept-ranges": "bytes", "content-type": "video/mp4"},
        )

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/v.mp4"}, headers={"Range": "bytes=150-249"})
    assert resp.status_code == 206
    assert resp.headers["content-range"] == "bytes 150-249/1000"
    assert resp.headers["x-proxy-reason"] == "range-synthesized"
    assert resp.content == payload[150:250]


@pytest.mark.anyio
async def test_range_without_byte_support_is_passed_through(payload):
    async with asgi_client(make_app(_ok(payload), ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/v.mp4"}, headers={"Range": "bytes=150-249"})
    assert resp.status_code == 200
    assert resp.headers["x-proxy-reason"] == "pass-through"
    assert resp.content == payload


@pytest.mark.anyio
async def test_manifest_is_rewritten_through_the_proxy():
    app = make_app(_ok(MANIFEST.encode(), **{"content-type": "application/vnd.apple.mpegurl"}), ANSWERS)
    async with asgi_client(app) as client:
        resp = await client.get("/", params={"url": "https://media.example/hls/index.m3u8"})
    assert resp.status_code == 200
    assert resp.headers["x-proxy-reason"] == "m3u8-rewrite"
    assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert resp.headers["cache-control"] == "public, max-age=300"

    lines = resp.text.split("\n")
    assert lines[1] == '#EXT-X-KEY:METHOD=AES-128,URI="http://proxy.test/?url=https%3A%2F%2Fmedia.example%2Fhls%2Fkey.bin"'
    assert lines[3] == "http://proxy.test/?url=https%3A%2F%2Fmedia.example%2Fhls%2Fseg1.ts"


@pytest.mark.anyio
async def test_manifest_after_redirect_resolves_against_final_hop():
    def handler(request):
        if request.url.path == "/start.m3u8":
            return httpx.Response(302, headers={"location": "/moved/index.m3u8"})
        return httpx.Response(200, content=b"#EXTM3U\nseg1.ts", headers={"content-type": "application/x-mpegurl"})

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/start.m3u8"})
    segment = parse_qs(urlsplit(resp.text.split("\n")[1]).query)["url"][0]
    assert segment == "https://media.example/moved/seg1.ts"


@pytest.mark.anyio
async def test_segment_request_with_embedded_headers_uses_them():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, content=b"ts", headers={"content-type": "video/mp2t"})

    target = 'https://media.example/seg1.ts?headers={"referer":"https://watch.example/ep1","origin":"https://watch.example"}'
    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": target})
    assert resp.status_code == 200
    assert seen["referer"] == "https://watch.example/ep1"
    assert seen["origin"] == "https://watch.example"


@pytest.mark.anyio
async def test_failed_rewrite_degrades_to_pass_through(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(proxy_module, "rewrite_manifest", broken)
    app = make_app(_ok(MANIFEST.encode(), **{"content-type": "application/vnd.apple.mpegurl"}), ANSWERS)
    async with asgi_client(app) as client:
        resp = await client.get("/", params={"url": "https://media.example/index.m3u8"})
    assert resp.status_code == 200
    assert resp.headers["x-proxy-reason"] == "pass-through"
    assert resp.text == MANIFEST

@pytest.mark.anyio
async def test_oversized_manifest_without_length_is_refused(monkeypatch):
    monkeypatch.setattr(proxy_module, "MAX_MANIFEST_SIZE", 64)
    body = (MANIFEST * 10).encode()

    def handler(request):
        return httpx.Response(200, headers={"content-type": "application/x-mpegurl"}, stream=httpx.ByteStream(body))

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/live.m3u8"})
    assert resp.status_code == 413
    assert resp.headers["x-proxy-reason"] == "size-limit"


@pytest.mark.anyio
async def test_manifest_without_length_under_ceiling_is_rewritten():
    def handler(request):
        return httpx.Response(200, headers={"content-type": "application/x-mpegurl"}, stream=httpx.ByteStream(MANIFEST.encode()))

    async with asgi_client(make_app(handler, ANSWERS)) as client:
        resp = await client.get("/", params={"url": "https://media.example/live.m3u8"})
    assert resp.headers["x-proxy-reason"] == "m3u8-rewrite"
    assert "url=https%3A%2F%2Fmedia.example%2Fseg1.ts" in resp.text

# --- client disconnects ------------------------------------------------------

class HangingStream(httpx.AsyncByteStream):
    """Yields one chunk then stalls until closed."""
    def __init__(self, first: bytes, started: anyio.Event):
        self.first = first
        self.started = started
        self.closed = False

    async def __aiter__(self):
        yield self.first
        self.started.set()
        await anyio.sleep_forever()

    async def aclose(self):
        self.closed = True


async def _raw_get(app, target: str, receive) -> list:
    """Drive ``GET /?url=target`` over bare ASGI and return what the app sent."""
    sent = []
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/",
        "raw_path": b"/",
        "root_path": "",
        "query_string": f"url={target}".encode(),
        "headers": [(b"host", b"proxy.test")],
        "client": ("127.0.0.1", 50000),
        "server": ("proxy.test", 80),
    }

    async def send(message):
        sent.append(message)

    with anyio.fail_after(5):
        await app(scope, receive, send)
    return sent


@pytest.mark.anyio
async def test_disconnect_before_first_hop_stops_the_fetch():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        hop = int(request.url.path[2:])
        return httpx.Response(302, headers={"location": f"/r{hop + 1}"})

    async def receive():
        return {"type": "http.disconnect"}

    sent = await _raw_get(make_app(handler, ANSWERS), "https://media.example/r0", receive)
    assert calls == []
    assert sent[0]["status"] == 499


@pytest.mark.anyio
async def test_disconnect_during_manifest_read_closes_upstream():
    started = anyio.Event()
    stream = HangingStream(b"#EXTM3U\n", started)

    def handler(request):
        return httpx.Response(200, headers={"content-type": "application/x-mpegurl"}, stream=stream)

    async def receive():
        await started.wait()
        return {"type": "http.disconnect"}

    sent = await _raw_get(make_app(handler, ANSWERS), "https://media.example/live.m3u8", receive)
    assert stream.closed
    assert sent[0]["status"] == 499

# --- dispatch, CORS and origin policy ----------------------------------------

@pytest.mark.anyio
async def test_health_and_preflight():
    app = make_app(_ok(), ANSWERS, allowed_origins=["https://app.example"])
    async with asgi_client(app) as client:
        health = await client.get("/health")
        preflight = await client.options("/", headers={"Origin": "https://app.example"})
    assert health.json() == {"status": "ok", "service": "pipe"}
    assert preflight.status_code == 204
    assert preflight.headers["access-control-allow-origin"] == "https://app.example"
    assert preflight.headers["access-control-max-age"] == "86400"
    assert preflight.headers["access-control-allow-methods"] == "GET, OPTIONS"


@pytest.mark.anyio
async def test_non_get_methods_are_refused():
    async with asgi_client(make_app(_ok(), ANSWERS)) as client:
        resp = await client.post("/", params={"url": "https://media.example/v.mp4"})
    assert resp.status_code == 405


@pytest.mark.anyio
async def test_origin_policy():
    app = make_app(_ok(), ANSWERS, allowed_origins=["https://app.example"])
    params = {"url": "https://media.example/v.mp4"}
    async with asgi_client(app) as client:
        allowed = await client.get("/", params=params, headers={"Origin": "https://app.example"})
        via_referer = await client.get("/", params=params, headers={"Referer": "https://app.example/watch"})
        own_segment = await client.get("/", params=params, headers={"Referer": "http://proxy.test/?url=x"})
        blocked = await client.get("/", params=params, headers={"Origin": "https://evil.example"})
        anonymous = await client.get("/", params=params)

    assert allowed.status_code == 200
    assert via_referer.status_code == 200
    assert own_segment.status_code == 200
    assert blocked.status_code == 403
    assert blocked.headers["x-proxy-reason"] == "origin-blocked"
    assert blocked.headers["access-control-allow-origin"] == "https://app.example"
    assert anonymous.status_code == 403

    async with asgi_client(app, base_url="http://localhost:8787") as local:
        assert (await local.get("/", params=params)).status_code == 200


@pytest.mark.anyio
async def test_proxy_path_alias():
    async with asgi_client(make_app(_ok(b"alias"), ANSWERS)) as client:
        resp = await client.get("/proxy", params={"url": "https://media.example/v.mp4"})
    assert resp.content == b"alias"
