"""REST endpoints for YouTube resolution and audio proxying."""
from typing import Optional
import httpx
from fastapi import APIRouter, Depends, Query, Request
from studio.resolver.proxy import proxy_stream
from studio.resolver.service import SourceResolver, source_resolver

router = APIRouter(prefix="/youtube")


def get_source_resolver() -> SourceResolver:
    return source_resolver


def get_proxy_client() -> Optional[httpx.AsyncClient]:
    """Per-request httpx client is created by the proxy when this returns None."""
    return None


@router.get("")
async def youtube_audio(
    request: Request,
    url: str = Query(""),
    resolver: SourceResolver = Depends(get_source_resolver),
    client: Optional[httpx.AsyncClient] = Depends(get_proxy_client),
):
    """
    Proxy the audio of a YouTube video.
    
    Args:
        url: Watch URL, short link or video id
        
    Returns:
        Streamed upstream audio honoring the Range header
    """
    direct_url = await resolver.resolve_direct_url(url)
    return await proxy_stream(direct_url, request, client)


@router.get("/info")
async def youtube_info(
    url: str = Query(""),
    resolver: SourceResolver = Depends(get_source_resolver),
):
    """
    Get a video's title.
    
    Returns:
        {"title": str or None}
    """
    title = await resolver.fetch_title(url)
    return {"title": title}


@router.get("/playlist")
async def youtube_playlist(
    url: str = Query(""),
    resolver: SourceResolver = Depends(get_source_resolver),
):
    """
    List a playlist's videos.
    
    Returns:
        {"items": [{"id", "title", "url"}]}
    """
    items = await resolver.list_playlist_items(url)
    return {"items": items}
