"""Unit tests for the relay session state machine."""
import asyncio
import json
from relay_doubles import FakeLauncher, FakeSink, settle
from studio.core.config import Settings
from studio.core.errors import EncoderStartFailure
from studio.relay.rtmp import NOT_CONFIGURED_MESSAGE
from studio.relay.session import CLOSE_INTERNAL_ERROR, RelaySession, RelayState

RTMP_URL = "rtmp://127.0.0.1/live/test-key"


def make_config(**overrides) -> Settings:
    values = {"rtmp_url": RTMP_URL, "rtmp_host": "", "rtmp_key": ""}
    values.update(overrides)
    return Settings(**values)


def start_frame(mime_type: str = "audio/webm;codecs=opus") -> str:
    return json.dumps({"type": "start", "mimeType": mime_type})


STOP_FRAME = json.dumps({"type": "stop"})


def test_chunks_before_ack_are_flushed_in_order():
    """Test that chunks sent while ffmpeg spawns reach it in arrival order."""
    async def scenario():
        gate = asyncio.Event()
        launcher = FakeLauncher(gate)
        sink = FakeSink()
        session = RelaySession("s1", sink, launcher=launcher, config=make_config())
        
        await session.handle_text(start_frame())
        assert session.state == RelayState.STARTING
        
        for chunk in (b"one", b"two", b"three"):
            await session.handle_chunk(chunk)
        assert list(session.pending) == [b"one", b"two", b"three"]
        
        gate.set()
        await session._start_task
        
        encoder = launcher.encoders[0]
        assert encoder.written == [b"one", b"two", b"three"]
        assert session.state == RelayState.STREAMING
        assert sink.of_type("ack") == [{"type": "ack", "message": "ffmpeg-started"}]
        
        await session.handle_chunk(b"four")
        assert encoder.written[-1] == b"four"
        assert session.chunks_dropped == 0
        
        await session.close()
    
    asyncio.run(scenario())


def test_chunk_before_start_is_dropped():
    """Test that binary data with no start frame is ignored."""
    async def scenario():
        launcher = FakeLauncher()
        sink = FakeSink()
        session = RelaySession("s2", sink, launcher=launcher, config=make_config())
        
        await session.handle_chunk(b"early")
        
        assert session.chunks_dropped == 1
        assert session.state == RelayState.IDLE
        assert launcher.calls == []
        assert sink.messages == []
    
    asyncio.run(scenario())


def test_stop_is_idempotent():
    """Test that repeated stop frames end the encoder once and raise nothing."""
    async def scenario():
        launcher = FakeLauncher()
        sink = FakeSink()
        session = RelaySession("s3", sink, launcher=launcher, config=make_config())
        
        await session.start("audio/webm")
        encoder = launcher.encoders[0]
        
        await session.handle_text(STOP_FRAME)
        await session.handle_text(STOP_FRAME)
        await settle()
        
        assert encoder.input_closed
        assert encoder.interrupted
        assert session.encoder is None
        assert session.state == RelayState.IDLE
        assert sink.of_type("error") == []
        assert sink.closes == []
    
    asyncio.run(scenario())


def test_stop_then_start_uses_fresh_encoder():
    """Test that a new start after stop spawns a new process."""
    async def scenario():
        launcher = FakeLauncher()
        sink = FakeSink()
        session = RelaySession("s4", sink, launcher=launcher, config=make_config())
        
        await session.start("audio/webm")
        await session.stop()
        await session.start("audio/ogg;codecs=opus")
        await session.handle_chunk(b"chunk")
        
        first, second = launcher.encoders
        assert first is not second
        assert first.written == []
        assert second.written == [b"chunk"]
        assert "ogg" in launcher.calls[1]
        
        await session.close()
    
    asyncio.run(scenario())


def test_start_while_streaming_restarts_encoder():
    """Test that a second start stops the running encoder first."""
    async def scenario():
        launcher = FakeLauncher()
        session = RelaySession("s5", FakeSink(), launcher=launcher, config=make_config())
        
        await session.start("audio/webm")
        await session.start("audio/webm")
        
        assert len(launcher.encoders) == 2
        assert launcher.encoders[0].interrupted
        assert session.encoder is launcher.encoders[1]
        
        await session.close()
    
    asyncio.run(scenario())


def test_stop_during_spawn_discards_late_encoder():
    """Test that an encoder finishing its spawn after stop is ended, not used."""
    async def scenario():
        gate = asyncio.Event()
        launcher = FakeLauncher(gate)
        sink = FakeSink()
        session = RelaySession("s6", sink, launcher=launcher, config=make_config())
        
        await session.handle_text(start_frame())
        await settle()
        assert len(launcher.calls) == 1
        await session.handle_chunk(b"queued")
        await session.handle_text(STOP_FRAME)
        
        gate.set()
        await session._start_task
        
        late = launcher.encoders[0]
        assert late.interrupted
        assert late.written == []
        assert session.encoder is None
        assert session.state == RelayState.IDLE
        assert sink.of_type("ack") == []
    
    asyncio.run(scenario())


def test_unconfigured_destination_reports_error_and_closes():
    """Test that start without an RTMP destination fails before spawning."""
    async def scenario():
        launcher = FakeLauncher()
        sink = FakeSink()
        session = RelaySession("s7", sink, launcher=launcher, config=make_config(rtmp_url=""))
        
        await session.start("audio/webm")
        
        assert launcher.calls == []
        assert sink.of_type("error") == [{"type": "error", "message": NOT_CONFIGURED_MESSAGE}]
        assert sink.closes == [(CLOSE_INTERNAL_ERROR, "ffmpeg start failure")]
        assert session.closed
    
    asyncio.run(scenario())


def test_spawn_failure_reports_error():
    """Test that a launcher failure is surfaced as an error frame."""
    async def scenario():
        launcher = FakeLauncher(error=EncoderStartFailure("Falha ao iniciar FFmpeg: not found"))
        sink = FakeSink()
        session = RelaySession("s8", sink, launcher=launcher, config=make_config())
        
        await session.handle_text(start_frame())
        await session.handle_chunk(b"lost")
        await session._start_task
        
        assert sink.of_type("error")[0]["message"] == "Falha ao iniciar FFmpeg: not found"
        assert session.state == RelayState.IDLE
        assert len(session.pending) == 0
    
    asyncio.run(scenario())


def test_unexpected_exit_reports_exit_code():
    """Test that ffmpeg dying mid-stream closes the connection with 1011."""
    async def scenario():
        launcher = FakeLauncher()
        sink = FakeSink()
        session = RelaySession("s9", sink, launcher=launcher, config=make_config())
        
        await session.start("audio/webm")
        launcher.encoders[0].exit(1)
        await settle()
        
        assert sink.of_type("error") == [{"type": "error", "message": "FFmpeg encerrou com código 1"}]
        assert sink.closes == [(CLOSE_INTERNAL_ERROR, "ffmpeg exited")]
        assert session.encoder is None
    
    asyncio.run(scenario())


def test_clean_exit_after_stop_is_silent():
    """Test that the exit following a requested stop is not an error."""
    async def scenario():
        launcher = FakeLauncher()
        sink = FakeSink()
        session = RelaySession("s10", sink, launcher=launcher, config=make_config())
        
        await session.start("audio/webm")
        await session.stop()
        await settle()
        
        assert sink.of_type("error") == []
    
    asyncio.run(scenario())


def test_write_failure_closes_connection():
    """Test that a broken encoder input ends the session with 1011."""
    async def scenario():
        launcher = FakeLauncher()
        sink = FakeSink()
        session = RelaySession("s11", sink, launcher=launcher, config=make_config())
        
        await session.start("audio/webm")
        launcher.encoders[0].input_closed = True
        await session.handle_chunk(b"chunk")
        
        assert sink.closes == [(CLOSE_INTERNAL_ERROR, "ffmpeg write failure")]
        assert session.closed
        assert session.encoder is None
    
    asyncio.run(scenario())


def test_invalid_control_frames_are_ignored():
    """Test that malformed JSON and unknown types do not change state."""
    async def scenario():
        launcher = FakeLauncher()
        sink = FakeSink()
        session = RelaySession("s12", sink, launcher=launcher, config=make_config())
        
        await session.handle_text("not json")
        await session.handle_text("[1, 2]")
        await session.handle_text(json.dumps({"type": "rewind"}))
        
        assert session.state == RelayState.IDLE
        assert launcher.calls == []
        assert sink.messages == []
    
    asyncio.run(scenario())


def test_encoder_output_is_forwarded():
    """Test that ffmpeg diagnostics reach the client as ffmpeg-output frames."""
    async def scenario():
        sink = FakeSink()
        session = RelaySession("s13", sink, launcher=FakeLauncher(), config=make_config())
        
        await session._on_encoder_output("frame=  10 fps=30")
        
        assert sink.messages == [{"type": "ffmpeg-output", "message": "frame=  10 fps=30"}]
    
    asyncio.run(scenario())
