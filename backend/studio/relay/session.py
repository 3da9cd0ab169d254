"""Per-connection relay session: control frames, pending chunks and encoder lifetime."""
import asyncio
import json
import signal
from collections import deque
from enum import Enum
from typing import Deque, Optional
from studio.core.config import Settings, settings
from studio.core.errors import EncoderRuntimeFailure, EncoderStartFailure, StudioError
from studio.core.logging import logger
from studio.relay.encoder import EncoderLauncher, build_encoder_args, launch_encoder
from studio.relay.rtmp import HostResolver, validate_rtmp_target

# WebSocket close code for abnormal server-side termination
CLOSE_INTERNAL_ERROR = 1011

DEFAULT_MIME_TYPE = "audio/webm"


class RelayState(str, Enum):
    """Lifecycle of a relay session."""
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"


class RelaySession:
    """
    Bridges one WebSocket connection to one ffmpeg process.
    
    The sink must provide `send(message: dict)` and `close(code, reason)`
    coroutines; it is the session's only way to talk to its client.
    """
    
    def __init__(
        self,
        session_id: str,
        sink,
        launcher: Optional[EncoderLauncher] = None,
        config: Optional[Settings] = None,
        resolve_host: Optional[HostResolver] = None
    ):
        self.session_id = session_id
        self.sink = sink
        self.config = config or settings
        self.state = RelayState.IDLE
        self.mime_type = DEFAULT_MIME_TYPE
        self.encoder = None
        self.pending: Deque[bytes] = deque()
        self.chunks_received = 0
        self.chunks_dropped = 0
        self.bytes_received = 0
        self.closed = False
        self._launcher = launcher or launch_encoder
        self._resolve_host = resolve_host
        self._generation = 0
        self._start_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
    
    async def handle_text(self, text: str) -> None:
        """
        Handle a JSON control frame.
        
        `start` enters STARTING immediately but spawns in a background task,
        so binary frames keep arriving (and queueing) while the encoder starts.
        """
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Mensagem inválida recebida em {self.session_id}: {text[:80]!r}")
            return
        if not isinstance(payload, dict):
            logger.warning(f"Mensagem inválida recebida em {self.session_id}: {payload!r}")
            return
        
        message_type = payload.get("type")
        if message_type == "start":
            mime_type = payload.get("mimeType")
            if not isinstance(mime_type, str):
                mime_type = self.mime_type
            generation = self._begin_start(mime_type)
            self._start_task = asyncio.create_task(self._complete_start(generation))
        elif message_type == "stop":
            await self.stop()
        else:
            logger.warning(f"Unknown control frame type {message_type!r} on {self.session_id}")
    
    async def handle_chunk(self, data: bytes) -> None:
        """Route one binary frame according to the session state."""
        self.chunks_received += 1
        self.bytes_received += len(data)
        
        if self.state == RelayState.STREAMING and self.encoder is not None:
            await self._write(data)
        elif self.state == RelayState.STARTING:
            self.pending.append(bytes(data))
        else:
            self.chunks_dropped += 1
            logger.warning(f"[{self.session_id}] Dados recebidos antes do comando start. Ignorando.")
    
    async def start(self, mime_type: str) -> None:
        """
        Spawn the encoder, acknowledge, then flush chunks queued meanwhile.
        
        Args:
            mime_type: Container format of the incoming audio
        """
        await self._complete_start(self._begin_start(mime_type))
    
    async def stop(self) -> None:
        """End the encoder input, interrupt it and clear pending chunks. Idempotent."""
        self._stop_encoder()
    
    async def close(self) -> None:
        """Tear down on connection close or error."""
        self.closed = True
        await self.stop()
    
    
    def _begin_start(self, mime_type: str) -> int:
        if self.encoder is not None or self.state != RelayState.IDLE:
            self._stop_encoder()
        
        self.mime_type = mime_type or DEFAULT_MIME_TYPE
        self.pending.clear()
        self.state = RelayState.STARTING
        self._generation += 1
        return self._generation
    
    async def _complete_start(self, generation: int) -> None:
        try:
            encoder = await asyncio.wait_for(
                self._spawn(generation),
                timeout=self.config.relay_start_timeout_seconds
            )
        except asyncio.TimeoutError:
            await self._abort_start(generation, EncoderStartFailure("Tempo esgotado ao iniciar o FFmpeg."))
            return
        except StudioError as e:
            await self._abort_start(generation, e)
            return
        
        if encoder is None:
            return
        if generation != self._generation or self.closed:
            # stop arrived while the encoder was spawning
            logger.info(f"[{self.session_id}] Start superseded, ending late encoder")
            self._end_encoder(encoder)
            return
        
        self.encoder = encoder
        self._watch_task = asyncio.create_task(self._watch_exit(encoder))
        logger.info(f"[{self.session_id}] FFmpeg pronto, {len(self.pending)} pacote(s) pendente(s)")
        await self.sink.send({"type": "ack", "message": "ffmpeg-started"})
        await self._flush_pending(encoder)
    
    def _stop_encoder(self) -> None:
        self._generation += 1
        encoder, self.encoder = self.encoder, None
        self.pending.clear()
        
        if encoder is None:
            self.state = RelayState.IDLE
            return
        
        self.state = RelayState.STOPPING
        logger.info(f"[{self.session_id}] Encerrando FFmpeg")
        self._end_encoder(encoder)
        self.state = RelayState.IDLE
    
    async def _spawn(self, generation: int):
        target = await validate_rtmp_target(self.config.final_rtmp_url, self._resolve_host)
        if generation != self._generation:
            return None
        args = build_encoder_args(self.mime_type, target, self.config)
        return await self._launcher(args, self._on_encoder_output)
    
    async def _abort_start(self, generation: int, error: StudioError) -> None:
        if generation != self._generation:
            return
        self.pending.clear()
        self.state = RelayState.IDLE
        logger.error(f"[{self.session_id}] Erro ao iniciar FFmpeg: {error.message}")
        await self._fail(error.message, "ffmpeg start failure")
    
    async def _flush_pending(self, encoder) -> None:
        # Chunks arriving during a write keep queueing behind the ones in flight
        while self.pending:
            if self.encoder is not encoder:
                return
            chunk = self.pending.popleft()
            if not await self._write(chunk):
                return
        if self.encoder is encoder and self.state == RelayState.STARTING:
            self.state = RelayState.STREAMING
    
    async def _write(self, chunk: bytes) -> bool:
        encoder = self.encoder
        if encoder is None:
            return False
        try:
            await encoder.write(chunk)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.error(f"[{self.session_id}] Erro ao enviar dados para FFmpeg: {e}")
            await self.stop()
            await self.sink.close(CLOSE_INTERNAL_ERROR, "ffmpeg write failure")
            self.closed = True
            return False
        return True
    
    def _end_encoder(self, encoder) -> None:
        encoder.close_input()
        encoder.interrupt()
    
    async def _watch_exit(self, encoder) -> None:
        code = await encoder.wait()
        if encoder is not self.encoder:
            logger.info(f"[{self.session_id}] FFmpeg finalizado (code={code})")
            return
        
        self.encoder = None
        self.pending.clear()
        self.state = RelayState.IDLE
        if code == 0:
            logger.info(f"[{self.session_id}] FFmpeg finalizado normalmente")
            return
        
        if code < 0:
            error = EncoderRuntimeFailure(f"FFmpeg encerrou com código {code} (signal {signal.Signals(-code).name})")
        else:
            error = EncoderRuntimeFailure(f"FFmpeg encerrou com código {code}")
        logger.error(f"[{self.session_id}] {error.message}")
        if not self.closed:
            await self._fail(error.message, "ffmpeg exited")
    
    async def _fail(self, message: str, reason: str) -> None:
        await self.sink.send({"type": "error", "message": message})
        await self.sink.close(CLOSE_INTERNAL_ERROR, reason)
        self.closed = True
    
    async def _on_encoder_output(self, message: str) -> None:
        if not self.closed:
            await self.sink.send({"type": "ffmpeg-output", "message": message})
