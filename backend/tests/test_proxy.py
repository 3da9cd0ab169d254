"""Unit tests for the streaming media proxy."""
import asyncio
import httpx
import pytest
from starlette.requests import Request
from studio.core.errors import UpstreamProxyFailure
from studio.resolver.proxy import infer_content_type, proxy_stream

DIRECT_URL = "https://rr1.googlevideo.com/videoplayback?id=1&mime=audio%2Fwebm"


def make_request(headers=None) -> Request:
    raw_headers = [(name.lower().encode(), value.encode()) for name, value in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/youtube", "headers": raw_headers})


async def collect(response) -> bytes:
    body = b""
    async for chunk in response.body_iterator:
        body += chunk
    await response.background()
    return body


def test_infer_content_type():
    assert infer_content_type(DIRECT_URL) == "audio/webm"
    assert infer_content_type("https://cdn.example/track.m4a") == "audio/mp4"
    assert infer_content_type("https://cdn.example/track.ogg") == "audio/ogg"
    assert infer_content_type("https://cdn.example/stream") == "audio/mpeg"


def test_range_request_is_forwarded_and_headers_propagated():
    """Test Range passthrough with a 206 upstream answer."""
    seen = {}
    
    def handler(request: httpx.Request) -> httpx.Response:
        seen["range"] = request.headers.get("range")
        return httpx.Response(
            206,
            headers={
                "content-type": "audio/webm",
                "content-range": "bytes 0-3/100",
                "accept-ranges": "bytes",
                "content-length": "4",
            },
            stream=httpx.ByteStream(b"\x1a\x45\xdf\xa3"),
        )
    
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await proxy_stream(DIRECT_URL, make_request({"Range": "bytes=0-3"}), client)
            body = await collect(response)
            return response, body
    
    response, body = asyncio.run(scenario())
    
    assert seen["range"] == "bytes=0-3"
    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 0-3/100"
    assert response.headers["accept-ranges"] == "bytes"
    assert response.headers["content-type"].startswith("audio/webm")
    assert body == b"\x1a\x45\xdf\xa3"


def test_missing_content_type_is_inferred():
    def handler(request):
        return httpx.Response(200, content=b"data")
    
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await proxy_stream("https://cdn.example/track.m4a", make_request(), client)
            body = await collect(response)
            return response, body
    
    response, body = asyncio.run(scenario())
    assert response.status_code == 200
    assert body == b"data"
    assert response.headers["content-type"].startswith("audio/mp4")


def test_upstream_error_status_raises():
    """Test that a 403 from the origin becomes an UpstreamProxyFailure."""
    def handler(request):
        return httpx.Response(403, content=b"forbidden")
    
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await proxy_stream(DIRECT_URL, make_request(), client)
    
    with pytest.raises(UpstreamProxyFailure) as error:
        asyncio.run(scenario())
    assert "403" in error.value.message


def test_upstream_connection_error_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)
    
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await proxy_stream(DIRECT_URL, make_request(), client)
    
    with pytest.raises(UpstreamProxyFailure):
        asyncio.run(scenario())
