"""FFmpeg transcoder process: WebSocket audio in, FLV over RTMP out."""
import asyncio
import signal
from typing import Awaitable, Callable, List, Optional
from studio.core.config import Settings, settings
from studio.core.errors import EncoderStartFailure
from studio.core.logging import logger

OutputCallback = Callable[[str], Awaitable[None]]


def input_format_for(mime_type: str) -> str:
    """Map a MediaRecorder mime type onto an ffmpeg demuxer name."""
    return "ogg" if "ogg" in (mime_type or "") else "webm"


def build_encoder_args(
    mime_type: str,
    rtmp_url: str,
    config: Optional[Settings] = None
) -> List[str]:
    """
    Build the ffmpeg argument list for one relay session.
    
    Input 0 is the live audio from stdin, input 1 a constant-color frame
    source; both are muxed with -shortest and pushed as FLV.
    
    Args:
        mime_type: Container negotiated by the client (webm or ogg)
        rtmp_url: Validated RTMP destination
        config: Settings to read encoder parameters from
        
    Returns:
        Arguments, without the binary path
    """
    config = config or settings
    color_input = (
        f"color=c={config.video_color}:s={config.video_resolution}"
        f":r={config.video_frame_rate}"
    )
    
    return [
        "-loglevel", "info",
        "-re",
        "-f", input_format_for(mime_type),
        "-i", "pipe:0",
        "-f", "lavfi",
        "-i", color_input,
        "-shortest",
        "-map", "1:v:0",
        "-map", "0:a:0",
        "-c:v", config.video_codec,
        "-preset", config.video_preset,
        "-tune", config.video_tune,
        "-pix_fmt", "yuv420p",
        "-b:v", config.video_bitrate,
        "-maxrate", config.video_maxrate,
        "-bufsize", config.video_bufsize,
        "-g", str(config.video_gop),
        "-c:a", "aac",
        "-b:a", config.audio_bitrate,
        "-ar", str(config.audio_sample_rate),
        "-ac", str(config.audio_channels),
        "-f", "flv",
        rtmp_url,
    ]


class EncoderProcess:
    """Owns one ffmpeg subprocess and pumps its diagnostic output."""
    
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_output: Optional[OutputCallback] = None,
        kill_grace_seconds: float = 5.0
    ):
        """
        Wrap a spawned process.
        
        Args:
            process: Process started with stdin and stderr pipes
            on_output: Coroutine receiving each new diagnostic message
            kill_grace_seconds: Time allowed after SIGINT before SIGKILL
        """
        self.process = process
        self._on_output = on_output
        self._kill_grace_seconds = kill_grace_seconds
        self._last_output = ""
        self._stderr_task = asyncio.create_task(self._pump_stderr())
        self._kill_task: Optional[asyncio.Task] = None
    
    @property
    def pid(self) -> int:
        return self.process.pid
    
    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode
    
    async def write(self, chunk: bytes) -> None:
        """
        Write one chunk to ffmpeg's stdin.
        
        Raises:
            BrokenPipeError: If stdin is closed or ffmpeg has gone away
        """
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError("FFmpeg stdin indisponível.")
        stdin.write(chunk)
        await stdin.drain()
    
    def close_input(self) -> None:
        """End ffmpeg's input stream."""
        stdin = self.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
    
    def interrupt(self) -> None:
        """Send SIGINT so ffmpeg finalizes the FLV output, escalating after the grace period."""
        if self.process.returncode is not None:
            return
        try:
            self.process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return
        if self._kill_task is None:
            self._kill_task = asyncio.create_task(self._kill_after_grace())
    
    async def wait(self) -> int:
        """Wait for exit, draining any remaining diagnostic output."""
        code = await self.process.wait()
        await self._stderr_task
        return code
    
    async def _kill_after_grace(self) -> None:
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self._kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"FFmpeg ignored SIGINT, killing (pid={self.pid})")
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
    
    async def _pump_stderr(self) -> None:
        stderr = self.process.stderr
        if stderr is None:
            return
        while True:
            data = await stderr.read(4096)
            if not data:
                break
            message = data.decode("utf-8", errors="replace").strip()
            # Avoid duplicate logs
            if not message or message == self._last_output:
                continue
            self._last_output = message
            logger.info(f"[relay-ffmpeg] {message}")
            if self._on_output is not None:
                await self._on_output(message)


async def launch_encoder(
    args: List[str],
    on_output: Optional[OutputCallback] = None,
    config: Optional[Settings] = None
) -> EncoderProcess:
    """
    Spawn ffmpeg with the given arguments.
    
    Args:
        args: Arguments from build_encoder_args
        on_output: Diagnostic output callback
        config: Settings providing the binary path
        
    Returns:
        Running EncoderProcess
        
    Raises:
        EncoderStartFailure: If the binary cannot be executed
    """
    config = config or settings
    command = [config.ffmpeg_path, *args]
    logger.info(f"Iniciando FFmpeg: {' '.join(command)}")
    
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error(f"Falha ao iniciar FFmpeg: {e}")
        raise EncoderStartFailure(f"Falha ao iniciar FFmpeg: {e}")
    
    logger.info(f"FFmpeg started (pid={process.pid})")
    return EncoderProcess(process, on_output=on_output)


# Signature shared by launch_encoder and test doubles
EncoderLauncher = Callable[[List[str], Optional[OutputCallback]], Awaitable[EncoderProcess]]
