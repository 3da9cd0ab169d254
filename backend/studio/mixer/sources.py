"""Source nodes for the mixer: decoded media elements and the live microphone."""
import collections
import os
import subprocess
import threading
from typing import Callable, Deque, List, Optional, Tuple
import numpy as np
from studio.core.config import Settings, settings
from studio.core.errors import DeviceUnavailable, PlaybackBlocked
from studio.core.logging import logger

# Time updates are reported at most this often (seconds of media time)
TIME_UPDATE_INTERVAL = 0.25

EndedListener = Callable[["MediaElement"], None]
TimeListener = Callable[["MediaElement"], None]


class MediaElement:
    """
    A playable source bound to one URL at a time.
    
    Transport state lives here; subclasses supply decoded audio through
    `_open`, `_read` and `_close`.
    """
    
    def __init__(self, sample_rate: int, channels: int):
        self.sample_rate = sample_rate
        self.channels = channels
        self.src: Optional[str] = None
        self.paused = True
        self.ended = False
        self.current_time = 0.0
        self.duration = 0.0
        self._ended_listeners: List[EndedListener] = []
        self._time_listeners: List[TimeListener] = []
        self._last_time_report = -TIME_UPDATE_INTERVAL
    
    def add_ended_listener(self, listener: EndedListener) -> None:
        self._ended_listeners.append(listener)
    
    def add_time_listener(self, listener: TimeListener) -> None:
        self._time_listeners.append(listener)
    
    def load(self, url: str) -> None:
        """Point the element at `url` and start buffering from 0 without playing."""
        self.src = url
        self.paused = True
        self.ended = False
        self.current_time = 0.0
        self.duration = 0.0
        self._last_time_report = -TIME_UPDATE_INTERVAL
        self._open(url, 0.0)
    
    async def play(self) -> None:
        """
        Start or resume playback.
        
        Raises:
            PlaybackBlocked: If nothing is loaded or the source cannot be decoded
        """
        if not self.src:
            raise PlaybackBlocked("Nenhuma faixa carregada.")
        if self.ended:
            self.seek(0.0)
        error = self._error()
        if error:
            raise PlaybackBlocked(f"Falha ao tocar a faixa: {error}")
        self.paused = False
        self.ended = False
    
    def pause(self) -> None:
        self.paused = True
    
    def seek(self, seconds: float) -> None:
        if not self.src:
            return
        self.current_time = max(0.0, float(seconds))
        self.ended = False
        self._last_time_report = -TIME_UPDATE_INTERVAL
        self._open(self.src, self.current_time)
    
    def close(self) -> None:
        self.paused = True
        self._close()
    
    def pull(self, frames: int) -> np.ndarray:
        """Return the next `frames` frames (silence while paused)."""
        out = np.zeros((frames, self.channels), dtype=np.float32)
        if self.paused or not self.src:
            return out
        
        data, exhausted = self._read(frames)
        if data.shape[0]:
            out[:data.shape[0]] = data
            self.current_time += data.shape[0] / self.sample_rate
        
        if self.current_time - self._last_time_report >= TIME_UPDATE_INTERVAL:
            self._last_time_report = self.current_time
            for listener in list(self._time_listeners):
                listener(self)
        
        if exhausted:
            self.paused = True
            self.ended = True
            for listener in list(self._ended_listeners):
                listener(self)
        return out
    
    def _open(self, url: str, offset: float) -> None:
        raise NotImplementedError
    
    def _read(self, frames: int) -> Tuple[np.ndarray, bool]:
        """Return up to `frames` frames and whether the media is exhausted."""
        raise NotImplementedError
    
    def _close(self) -> None:
        pass
    
    def _error(self) -> Optional[str]:
        return None


class FFmpegDecoder:
    """
    Decodes a URL to interleaved float32 PCM on a reader thread.
    
    The thread stops reading once `max_buffer_seconds` are buffered, so a
    long track never sits fully in memory.
    """
    
    def __init__(
        self,
        url: str,
        offset: float,
        sample_rate: int,
        channels: int,
        config: Optional[Settings] = None,
        max_buffer_seconds: float = 10.0
    ):
        self.url = url
        self.offset = offset
        self.sample_rate = sample_rate
        self.channels = channels
        self.config = config or settings
        self.bytes_per_frame = 4 * channels
        self.max_buffer_bytes = int(max_buffer_seconds * sample_rate) * self.bytes_per_frame
        self.error: Optional[str] = None
        self.eof = False
        self.duration = 0.0
        self._buffer = bytearray()
        self._condition = threading.Condition()
        self._closed = False
        self.proc: Optional[subprocess.Popen] = None
        self._thread = threading.Thread(target=self._run, name=f"decoder-{os.path.basename(url)[:24]}", daemon=True)
        self._thread.start()
    
    def _run(self) -> None:
        self.duration = self._probe_duration()
        command = [
            self.config.ffmpeg_path,
            "-nostdin",
            "-loglevel", "error",
            "-ss", f"{self.offset:.3f}",
            "-i", self.url,
            "-vn",
            "-f", "f32le",
            "-ac", str(self.channels),
            "-ar", str(self.sample_rate),
            "-",
        ]
        try:
            self.proc = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.error(f"Failed to start decoder for {self.url}: {e}")
            self.error = str(e)
            self._finish()
            return
        
        assert self.proc.stdout is not None
        while True:
            with self._condition:
                while len(self._buffer) >= self.max_buffer_bytes and not self._closed:
                    self._condition.wait()
                if self._closed:
                    break
            data = self.proc.stdout.read(self.bytes_per_frame * 4096)
            if not data:
                break
            with self._condition:
                self._buffer.extend(data)
        
        code = self.proc.wait()
        if code not in (0, None) and not self._closed:
            logger.warning(f"Decoder exited with code {code} for {self.url}")
            if not self._buffer and self.error is None:
                self.error = f"ffmpeg código {code}"
        self._finish()
    
    def _probe_duration(self) -> float:
        command = [
            self.config.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            self.url,
        ]
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=15)
            return float(result.stdout.strip().splitlines()[0])
        except (OSError, subprocess.TimeoutExpired, ValueError, IndexError) as e:
            logger.debug(f"Duration probe failed for {self.url}: {e}")
            return 0.0
    
    def _finish(self) -> None:
        with self._condition:
            self.eof = True
            self._condition.notify_all()
    
    def read(self, frames: int) -> Tuple[np.ndarray, bool]:
        wanted = frames * self.bytes_per_frame
        with self._condition:
            available = len(self._buffer) - len(self._buffer) % self.bytes_per_frame
            take = min(wanted, available)
            data = bytes(self._buffer[:take])
            del self._buffer[:take]
            exhausted = self.eof and len(self._buffer) < self.bytes_per_frame
            self._condition.notify_all()
        samples = np.frombuffer(data, dtype=np.float32).reshape(-1, self.channels)
        return samples, exhausted
    
    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        if self.proc is not None and self.proc.poll() is None:
            self.proc.kill()


class FFmpegMediaElement(MediaElement):
    """Media element decoding any ffmpeg-readable URL (files, HTTP, resolver proxy)."""
    
    def __init__(self, sample_rate: int, channels: int, config: Optional[Settings] = None):
        super().__init__(sample_rate, channels)
        self.config = config or settings
        self._decoder: Optional[FFmpegDecoder] = None
    
    def _open(self, url: str, offset: float) -> None:
        self._close()
        self._decoder = FFmpegDecoder(url, offset, self.sample_rate, self.channels, self.config)
    
    def _read(self, frames: int) -> Tuple[np.ndarray, bool]:
        decoder = self._decoder
        if decoder is None:
            return np.zeros((0, self.channels), dtype=np.float32), True
        if decoder.duration and not self.duration:
            self.duration = decoder.duration
        return decoder.read(frames)
    
    def _close(self) -> None:
        if self._decoder is not None:
            self._decoder.close()
            self._decoder = None
    
    def _error(self) -> Optional[str]:
        return self._decoder.error if self._decoder is not None else None


class MicrophoneSource:
    """Live capture device feeding the microphone channel."""
    
    def __init__(self, sample_rate: int, channels: int, max_blocks: int = 32):
        self.sample_rate = sample_rate
        self.channels = channels
        self._blocks: Deque[np.ndarray] = collections.deque(maxlen=max_blocks)
        self._pending = np.zeros((0, channels), dtype=np.float32)
        self._lock = threading.Lock()
        self._stream = None
    
    def open(self) -> None:
        """
        Acquire the default input device.
        
        Raises:
            DeviceUnavailable: On missing PortAudio, denied permission or hardware failure
        """
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise DeviceUnavailable(f"Falha ao acessar o microfone: {e}")
        
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            raise DeviceUnavailable(f"Falha ao acessar o microfone: {e}")
        self._stream = stream
        logger.info("Microphone capture started")
    
    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug(f"Microphone status: {status}")
        with self._lock:
            self._blocks.append(indata.copy())
    
    def pull(self, frames: int) -> np.ndarray:
        with self._lock:
            blocks = list(self._blocks)
            self._blocks.clear()
        if blocks:
            self._pending = np.concatenate([self._pending, *blocks])
        
        out = np.zeros((frames, self.channels), dtype=np.float32)
        take = min(frames, self._pending.shape[0])
        out[:take] = self._pending[:take]
        self._pending = self._pending[take:]
        return out
    
    def close(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
            logger.info("Microphone capture stopped")
