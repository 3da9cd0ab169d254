"""Resolve YouTube references into direct, proxyable audio URLs."""
import json
from typing import Dict, List, Optional
from studio.core.config import settings
from studio.core.errors import ResolutionFailure
from studio.core.logging import logger
from studio.resolver.cache import SourceCache
from studio.resolver.canonical import (
    canonicalize_playlist_reference,
    canonicalize_video_reference,
    watch_url,
)
from studio.resolver.ytdlp import YtDlpRunner


class SourceResolver:
    """Canonicalizes references, resolves them with yt-dlp and caches the result."""
    
    def __init__(self, runner: Optional[YtDlpRunner] = None, cache: Optional[SourceCache] = None):
        """
        Initialize the resolver.
        
        Args:
            runner: yt-dlp runner (or a double exposing `run(args)`)
            cache: Resolved-source cache (defaults to the configured TTL)
        """
        self.runner = runner or YtDlpRunner()
        self.cache = cache or SourceCache(settings.resolver_cache_ttl_seconds)
    
    async def resolve_direct_url(self, reference: str) -> str:
        """
        Resolve a video reference to a direct media URL.
        
        Args:
            reference: Watch URL, short link or bare video id
            
        Returns:
            Direct, time-limited URL of the best audio format
            
        Raises:
            InvalidReference: If the reference is not a video
            ResolutionFailure: If yt-dlp fails or prints nothing
        """
        key = canonicalize_video_reference(reference)
        entry = await self.cache.get_or_resolve(key, self._resolve_uncached)
        return entry.direct_url
    
    async def list_playlist_items(self, reference: str) -> List[Dict[str, str]]:
        """
        List a playlist's entries without resolving each one.
        
        Args:
            reference: Playlist URL (must carry a list id)
            
        Returns:
            Ordered list of {"id", "title", "url"} dictionaries
            
        Raises:
            InvalidReference: Before any external call if the reference is malformed
            ResolutionFailure: If yt-dlp fails or its output cannot be parsed
        """
        playlist_url = canonicalize_playlist_reference(reference)
        output = await self.runner.run(["--flat-playlist", "-J", playlist_url])
        
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.error(f"Unparseable playlist listing for {playlist_url}")
            raise ResolutionFailure("Resposta inesperada ao listar a playlist.")
        
        items = []
        for entry in data.get("entries") or []:
            video_id = entry.get("id") if isinstance(entry, dict) else None
            if not video_id:
                continue
            items.append({
                "id": video_id,
                "title": entry.get("title") or video_id,
                "url": watch_url(video_id),
            })
        
        logger.info(f"Playlist {playlist_url}: {len(items)} item(s)")
        return items
    
    async def fetch_title(self, reference: str) -> Optional[str]:
        """
        Fetch a video's title for display.
        
        Args:
            reference: Video reference
            
        Returns:
            Title, or None when yt-dlp cannot provide one
            
        Raises:
            InvalidReference: If the reference is not a video
        """
        key = canonicalize_video_reference(reference)
        try:
            output = await self.runner.run(["--skip-download", "--no-playlist", "--print", "title", key])
        except ResolutionFailure as e:
            logger.warning(f"Title lookup failed for {key}: {e.message}")
            return None
        title = output.strip().splitlines()
        return title[0] if title else None
    
    async def _resolve_uncached(self, key: str) -> str:
        output = await self.runner.run(["-f", "bestaudio/best", "--no-playlist", "-g", key])
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        if not lines:
            raise ResolutionFailure("Nenhum áudio encontrado para este vídeo.")
        logger.info(f"Resolved {key}")
        return lines[0]


# Global resolver instance
source_resolver = SourceResolver()
