"""Integration tests for the relay WebSocket endpoint."""
import asyncio
import json
import threading
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from relay_doubles import FakeEncoder
from studio.api import ws_relay
from studio.core.config import settings
from studio.main import app
from studio.relay.rtmp import NOT_CONFIGURED_MESSAGE
from studio.relay.session import RelaySession


class RecordingLauncher:
    """Launcher double shared across the test thread and the app's event loop."""
    
    def __init__(self, expected_chunks: int = 0):
        self.expected_chunks = expected_chunks
        self.args = []
        self.encoders = []
        self.received = threading.Event()
    
    async def __call__(self, args, on_output=None):
        self.args.append(list(args))
        encoder = FakeEncoder()
        original_write = encoder.write
        
        async def write(chunk):
            await original_write(chunk)
            if len(encoder.written) >= self.expected_chunks:
                self.received.set()
        
        encoder.write = write
        self.encoders.append(encoder)
        return encoder


@pytest.fixture
def rtmp_destination():
    """Point the relay at a literal-IP destination for the duration of a test."""
    original = (settings.rtmp_url, settings.rtmp_host, settings.rtmp_key)
    settings.rtmp_url = "rtmp://127.0.0.1/live/test-key"
    try:
        yield settings.rtmp_url
    finally:
        settings.rtmp_url, settings.rtmp_host, settings.rtmp_key = original


@pytest.fixture
def no_rtmp_destination():
    original = (settings.rtmp_url, settings.rtmp_host, settings.rtmp_key)
    settings.rtmp_url, settings.rtmp_host, settings.rtmp_key = "", "", ""
    try:
        yield
    finally:
        settings.rtmp_url, settings.rtmp_host, settings.rtmp_key = original


def override_launcher(launcher):
    app.dependency_overrides[ws_relay.get_encoder_launcher] = lambda: launcher


def test_relay_streams_chunks_to_encoder(rtmp_destination):
    """Test start, three binary frames and stop over the root endpoint."""
    launcher = RecordingLauncher(expected_chunks=3)
    override_launcher(launcher)
    try:
        client = TestClient(app)
        with client.websocket_connect("/", subprotocols=["audio-stream"]) as ws:
            assert ws.accepted_subprotocol == "audio-stream"
            status = ws.receive_json()
            assert status == {"type": "status", "message": "connected", "rtmpUrl": "✓ Configurado"}
            
            ws.send_text(json.dumps({"type": "start", "mimeType": "audio/webm;codecs=opus"}))
            for chunk in (b"\x1a\x45\xdf\xa3", b"cluster-1", b"cluster-2"):
                ws.send_bytes(chunk)
            
            assert ws.receive_json() == {"type": "ack", "message": "ffmpeg-started"}
            assert launcher.received.wait(timeout=5)
            ws.send_text(json.dumps({"type": "stop"}))
        
        encoder = launcher.encoders[0]
        assert encoder.written == [b"\x1a\x45\xdf\xa3", b"cluster-1", b"cluster-2"]
        assert launcher.args[0][-1] == rtmp_destination
    finally:
        app.dependency_overrides.clear()


def test_relay_without_destination_reports_error(no_rtmp_destination):
    """Test that start with RTMP unset yields an error frame and close 1011."""
    launcher = RecordingLauncher()
    override_launcher(launcher)
    try:
        client = TestClient(app)
        with client.websocket_connect("/ws/relay") as ws:
            status = ws.receive_json()
            assert status["rtmpUrl"] == "✗ Não configurado"
            
            ws.send_text(json.dumps({"type": "start", "mimeType": "audio/webm"}))
            
            error = ws.receive_json()
            assert error == {"type": "error", "message": NOT_CONFIGURED_MESSAGE}
            with pytest.raises(WebSocketDisconnect) as closed:
                ws.receive_text()
            assert closed.value.code == 1011
        
        assert launcher.args == []
    finally:
        app.dependency_overrides.clear()


def test_unexpected_failure_sends_error_and_closes_abnormally(rtmp_destination, monkeypatch):
    """Test that a failure inside the receive loop reaches the panel as error + 1011."""
    async def broken_chunk(self, data):
        raise ValueError("decoder state lost")
    
    monkeypatch.setattr(RelaySession, "handle_chunk", broken_chunk)
    override_launcher(RecordingLauncher())
    try:
        client = TestClient(app)
        with client.websocket_connect("/") as ws:
            ws.receive_json()
            ws.send_bytes(b"\x1a\x45\xdf\xa3")
            
            error = ws.receive_json()
            assert error["type"] == "error"
            assert "decoder state lost" in error["message"]
            with pytest.raises(WebSocketDisconnect) as closed:
                ws.receive_text()
            assert closed.value.code == 1011
    finally:
        app.dependency_overrides.clear()


def test_status_counts_relay_connections(rtmp_destination):
    """Test that /status reflects an open relay connection."""
    launcher = RecordingLauncher()
    override_launcher(launcher)
    try:
        client = TestClient(app)
        with client.websocket_connect("/") as ws:
            ws.receive_json()
            response = client.get("/status")
            body = response.json()
            assert response.status_code == 200
            assert body["ok"] is True
            assert body["rtmpUrl"] == "✓ Configurado"
            assert body["rtmpConfigured"] is True
            assert body["connections"] == 1
            assert body["broadcasting"] is False
    finally:
        app.dependency_overrides.clear()
