"""Canonical forms for YouTube references."""
import re
from typing import Optional
from urllib.parse import parse_qs, urlsplit
from studio.core.errors import InvalidReference

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
PLAYLIST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{2,64}$")

YOUTUBE_HOSTS = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtube-nocookie.com",
    "www.youtube-nocookie.com",
}
SHORT_HOSTS = {"youtu.be", "www.youtu.be"}

# /shorts/<id>, /embed/<id>, /live/<id>, /v/<id>
PATH_PREFIXES = ("shorts", "embed", "live", "v")


def _parse(value: str):
    candidate = value.strip()
    if not candidate:
        return None
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https"):
        return None
    return parts


def extract_video_id(reference: str) -> Optional[str]:
    """
    Extract the 11-character video id from a reference.
    
    Accepts bare ids, watch URLs, youtu.be short links and
    shorts/embed/live paths; playlist and tracking parameters are ignored.
    
    Args:
        reference: User supplied URL or id
        
    Returns:
        Video id, or None if the reference is not a video
    """
    if reference is None:
        return None
    value = reference.strip()
    if VIDEO_ID_PATTERN.match(value):
        return value
    
    parts = _parse(value)
    if parts is None:
        return None
    host = (parts.hostname or "").lower()
    segments = [segment for segment in parts.path.split("/") if segment]
    
    if host in SHORT_HOSTS:
        video_id = segments[0] if segments else ""
    elif host in YOUTUBE_HOSTS:
        query = parse_qs(parts.query)
        if query.get("v"):
            video_id = query["v"][0]
        elif len(segments) >= 2 and segments[0] in PATH_PREFIXES:
            video_id = segments[1]
        else:
            return None
    else:
        return None
    
    return video_id if VIDEO_ID_PATTERN.match(video_id) else None


def canonicalize_video_reference(reference: str) -> str:
    """
    Normalize a video reference to https://www.youtube.com/watch?v=<id>.
    
    Raises:
        InvalidReference: If no video id can be extracted
    """
    video_id = extract_video_id(reference)
    if not video_id:
        raise InvalidReference("URL do YouTube invalida.")
    return watch_url(video_id)


def canonicalize_playlist_reference(reference: str) -> str:
    """
    Normalize a playlist reference to https://www.youtube.com/playlist?list=<id>.
    
    Raises:
        InvalidReference: If the reference is not a YouTube URL carrying a list id
    """
    parts = _parse(reference or "")
    if parts is None or (parts.hostname or "").lower() not in YOUTUBE_HOSTS | SHORT_HOSTS:
        raise InvalidReference("URL de playlist invalida.")
    
    list_ids = parse_qs(parts.query).get("list")
    if not list_ids or not PLAYLIST_ID_PATTERN.match(list_ids[0]):
        raise InvalidReference("URL de playlist invalida.")
    return f"https://www.youtube.com/playlist?list={list_ids[0]}"


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"
