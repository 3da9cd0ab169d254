"""Range-aware streaming proxy for resolved media URLs."""
from typing import AsyncIterator, Optional
from urllib.parse import parse_qs, urlsplit
import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import StreamingResponse
from studio.core.config import settings
from studio.core.errors import UpstreamProxyFailure
from studio.core.logging import logger

PASSTHROUGH_HEADERS = ("content-length", "content-range", "accept-ranges")

EXTENSION_TYPES = {
    ".webm": "audio/webm",
    ".weba": "audio/webm",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".opus": "audio/ogg",
}


def infer_content_type(url: str) -> str:
    """
    Guess a media type from URL hints.
    
    googlevideo URLs carry a `mime` query parameter; otherwise the path
    extension decides.
    
    Args:
        url: Direct media URL
        
    Returns:
        Media type, audio/mpeg when nothing matches
    """
    parts = urlsplit(url)
    mime = parse_qs(parts.query).get("mime")
    if mime and "/" in mime[0]:
        return mime[0]
    
    path = parts.path.lower()
    for extension, media_type in EXTENSION_TYPES.items():
        if path.endswith(extension):
            return media_type
    if "webm" in url:
        return "audio/webm"
    if "mp4" in url or "m4a" in url:
        return "audio/mp4"
    return "audio/mpeg"


async def _relay_body(upstream: httpx.Response, direct_url: str) -> AsyncIterator[bytes]:
    if upstream.is_stream_consumed:
        # Already buffered by the transport
        yield upstream.content
        return
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        # Headers are already sent; the client sees a truncated body
        logger.error(f"Upstream stream interrupted for {direct_url[:80]}: {e}")


async def proxy_stream(
    direct_url: str,
    request: Request,
    client: Optional[httpx.AsyncClient] = None
) -> StreamingResponse:
    """
    Stream a direct media URL back to the caller.
    
    The caller's Range header is forwarded; status, content-type,
    content-length, content-range and accept-ranges are propagated.
    
    Args:
        direct_url: URL returned by the resolver
        request: Incoming request
        client: Shared httpx client (a private one is created and closed otherwise)
        
    Returns:
        Streaming response with the upstream body
        
    Raises:
        UpstreamProxyFailure: If the upstream request fails or returns an error status
    """
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=settings.proxy_timeout_seconds, follow_redirects=True)
    
    headers = {}
    range_header = request.headers.get("range")
    if range_header:
        headers["Range"] = range_header
    
    try:
        upstream = await client.send(client.build_request("GET", direct_url, headers=headers), stream=True)
    except httpx.HTTPError as e:
        logger.error(f"Upstream request failed: {e}")
        if owns_client:
            await client.aclose()
        raise UpstreamProxyFailure(f"Falha ao buscar o áudio de origem: {e.__class__.__name__}")
    
    if upstream.status_code >= 400:
        logger.error(f"Upstream responded {upstream.status_code}")
        await upstream.aclose()
        if owns_client:
            await client.aclose()
        raise UpstreamProxyFailure(f"Origem respondeu com status {upstream.status_code}.")
    
    response_headers = {
        name: upstream.headers[name]
        for name in PASSTHROUGH_HEADERS
        if name in upstream.headers
    }
    media_type = upstream.headers.get("content-type") or infer_content_type(direct_url)
    
    async def close_upstream() -> None:
        await upstream.aclose()
        if owns_client:
            await client.aclose()
    
    return StreamingResponse(
        _relay_body(upstream, direct_url),
        status_code=upstream.status_code,
        headers=response_headers,
        media_type=media_type,
        background=BackgroundTask(close_upstream),
    )
