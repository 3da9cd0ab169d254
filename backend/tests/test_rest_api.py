"""Integration tests for the REST endpoints."""
import json
import httpx
import pytest
from fastapi.testclient import TestClient
from studio.api import rest_youtube
from studio.core.errors import ResolutionFailure
from studio.main import app
from studio.resolver.cache import SourceCache
from studio.resolver.service import SourceResolver

DIRECT_URL = "https://rr1.googlevideo.com/videoplayback?id=1&mime=audio%2Fwebm"


class FakeRunner:
    def __init__(self, output=None, error=None):
        self.output = output
        self.error = error
        self.calls = []
    
    async def run(self, args):
        self.calls.append(list(args))
        if self.error is not None:
            raise self.error
        return self.output


def upstream(request: httpx.Request) -> httpx.Response:
    if request.headers.get("range"):
        return httpx.Response(206, headers={"content-type": "audio/webm", "content-range": "bytes 0-1/10"}, content=b"ab")
    return httpx.Response(200, headers={"content-type": "audio/webm"}, content=b"abcdefghij")


@pytest.fixture
def client_with():
    """Build a TestClient whose resolver answers from a FakeRunner."""
    def build(runner, handler=upstream):
        resolver = SourceResolver(runner=runner, cache=SourceCache(ttl_seconds=600))
        proxy_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        app.dependency_overrides[rest_youtube.get_source_resolver] = lambda: resolver
        app.dependency_overrides[rest_youtube.get_proxy_client] = lambda: proxy_client
        return TestClient(app)
    
    yield build
    app.dependency_overrides.clear()


def test_health():
    response = TestClient(app).get("/health")
    assert response.status_code == 200
    assert response.text == "ok"


def test_playlist_rejects_invalid_reference(client_with):
    """Test that a malformed playlist reference is a 400 with no yt-dlp call."""
    runner = FakeRunner()
    client = client_with(runner)
    
    response = client.get("/youtube/playlist", params={"url": "not-a-url"})
    
    assert response.status_code == 400
    assert response.json() == {"error": "URL de playlist invalida."}
    assert runner.calls == []


def test_audio_rejects_invalid_reference(client_with):
    client = client_with(FakeRunner())
    response = client.get("/youtube", params={"url": "https://example.com/x"})
    assert response.status_code == 400
    assert response.json() == {"error": "URL do YouTube invalida."}


def test_playlist_lists_items(client_with):
    listing = json.dumps({"entries": [{"id": "aaaaaaaaaaa", "title": "First"}]})
    client = client_with(FakeRunner(output=listing))
    
    response = client.get("/youtube/playlist", params={"url": "https://www.youtube.com/playlist?list=PLabc"})
    
    assert response.status_code == 200
    assert response.json() == {"items": [
        {"id": "aaaaaaaaaaa", "title": "First", "url": "https://www.youtube.com/watch?v=aaaaaaaaaaa"},
    ]}


def test_info_returns_title(client_with):
    client = client_with(FakeRunner(output="Song Title\n"))
    response = client.get("/youtube/info", params={"url": "dQw4w9WgXcQ"})
    assert response.json() == {"title": "Song Title"}


def test_info_title_is_null_when_lookup_fails(client_with):
    client = client_with(FakeRunner(error=ResolutionFailure("offline")))
    response = client.get("/youtube/info", params={"url": "dQw4w9WgXcQ"})
    assert response.status_code == 200
    assert response.json() == {"title": None}


def test_audio_proxies_with_range(client_with):
    """Test that the audio endpoint honors Range through the proxy."""
    runner = FakeRunner(output=DIRECT_URL + "\n")
    client = client_with(runner)
    
    full = client.get("/youtube", params={"url": "https://youtu.be/dQw4w9WgXcQ"})
    partial = client.get("/youtube", params={"url": "dQw4w9WgXcQ"}, headers={"Range": "bytes=0-1"})
    
    assert full.status_code == 200
    assert full.content == b"abcdefghij"
    assert partial.status_code == 206
    assert partial.headers["content-range"] == "bytes 0-1/10"
    assert partial.content == b"ab"
    assert len(runner.calls) == 1


def test_audio_resolution_failure_is_500(client_with):
    client = client_with(FakeRunner(error=ResolutionFailure("Falha ao consultar o YouTube: private video")))
    response = client.get("/youtube", params={"url": "dQw4w9WgXcQ"})
    assert response.status_code == 500
    assert response.json() == {"error": "Falha ao consultar o YouTube: private video"}


def test_audio_upstream_failure_is_502(client_with):
    client = client_with(FakeRunner(output=DIRECT_URL), handler=lambda request: httpx.Response(410))
    response = client.get("/youtube", params={"url": "dQw4w9WgXcQ"})
    assert response.status_code == 502
    assert "410" in response.json()["error"]
