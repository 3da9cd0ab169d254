"""Unit tests for YouTube reference canonicalization."""
import pytest
from studio.core.errors import InvalidReference
from studio.resolver.canonical import (
    canonicalize_playlist_reference,
    canonicalize_video_reference,
    extract_video_id,
)

VIDEO_ID = "dQw4w9WgXcQ"
WATCH_URL = f"https://www.youtube.com/watch?v={VIDEO_ID}"


@pytest.mark.parametrize("reference", [
    VIDEO_ID,
    WATCH_URL,
    f"https://youtube.com/watch?v={VIDEO_ID}&list=PL123&t=42s",
    f"https://youtu.be/{VIDEO_ID}?si=tracking",
    f"youtu.be/{VIDEO_ID}",
    f"https://m.youtube.com/watch?v={VIDEO_ID}",
    f"https://www.youtube.com/shorts/{VIDEO_ID}",
    f"https://www.youtube.com/embed/{VIDEO_ID}",
    f"  {WATCH_URL}  ",
])
def test_equivalent_references_share_canonical_form(reference):
    """Test that different spellings of one video map to the same key."""
    assert canonicalize_video_reference(reference) == WATCH_URL


@pytest.mark.parametrize("reference", [
    "",
    "not-a-url",
    "https://example.com/watch?v=dQw4w9WgXcQ",
    "https://www.youtube.com/watch",
    "https://www.youtube.com/playlist?list=PL123",
    "ftp://youtube.com/watch?v=dQw4w9WgXcQ",
])
def test_invalid_video_references(reference):
    with pytest.raises(InvalidReference) as error:
        canonicalize_video_reference(reference)
    assert error.value.message == "URL do YouTube invalida."


def test_extract_video_id_returns_none_for_short_ids():
    assert extract_video_id("https://youtu.be/abc") is None


def test_playlist_canonical_form():
    reference = "https://www.youtube.com/watch?v=dQw4w9WgXcQ&list=PLabc_123-x"
    assert canonicalize_playlist_reference(reference) == "https://www.youtube.com/playlist?list=PLabc_123-x"


@pytest.mark.parametrize("reference", ["not-a-url", "", "https://www.youtube.com/watch?v=dQw4w9WgXcQ"])
def test_invalid_playlist_references(reference):
    with pytest.raises(InvalidReference) as error:
        canonicalize_playlist_reference(reference)
    assert error.value.message == "URL de playlist invalida."
