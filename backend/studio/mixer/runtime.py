"""Block-based audio runtime: per-channel gain and analysis feeding a master bus."""
import asyncio
import collections
import threading
from enum import Enum
from typing import Deque, Dict, List, Optional
import numpy as np
from studio.core.errors import UnsupportedPlatform
from studio.core.logging import logger
from studio.mixer.models import ChannelId


class RuntimeState(str, Enum):
    SUSPENDED = "suspended"
    RUNNING = "running"
    CLOSED = "closed"


class GainNode:
    """Gain stage with optional linear ramps, applied per sample."""
    
    def __init__(self, value: float = 1.0):
        self.value = float(value)
        self._ramp_target: Optional[float] = None
        self._ramp_remaining = 0  # samples
    
    def set_value(self, value: float) -> None:
        """Set the gain immediately, cancelling any ramp."""
        self.value = float(value)
        self._ramp_target = None
        self._ramp_remaining = 0
    
    def ramp_to(self, value: float, seconds: float, sample_rate: int) -> None:
        """Start a linear ramp from the current value to `value` over `seconds`."""
        samples = int(seconds * sample_rate)
        if samples <= 0:
            self.set_value(value)
            return
        self._ramp_target = float(value)
        self._ramp_remaining = samples
    
    def process(self, block: np.ndarray) -> np.ndarray:
        if self._ramp_target is None:
            return block * self.value
        
        frames = block.shape[0]
        steps = min(frames, self._ramp_remaining)
        increment = (self._ramp_target - self.value) / self._ramp_remaining
        envelope = np.full(frames, self.value, dtype=np.float32)
        envelope[:steps] = self.value + increment * np.arange(1, steps + 1, dtype=np.float32)
        self._ramp_remaining -= steps
        if self._ramp_remaining == 0:
            envelope[steps:] = self._ramp_target
            self.value = self._ramp_target
            self._ramp_target = None
        else:
            self.value = float(envelope[steps - 1])
        return block * envelope[:, np.newaxis]


class AnalyserNode:
    """Keeps peak and RMS of the last processed block."""
    
    def __init__(self):
        self.peak = 0.0
        self.rms = 0.0
    
    def process(self, block: np.ndarray) -> np.ndarray:
        if block.size == 0:
            self.peak = 0.0
            self.rms = 0.0
        else:
            self.peak = float(np.max(np.abs(block)))
            self.rms = float(np.sqrt(np.mean(block * block)))
        return block
    
    def level(self) -> int:
        """Peak as a 0-100 meter reading."""
        return int(round(min(self.peak, 1.0) * 100))


class ChannelStrip:
    """Sources summed into one gain node feeding one analyser."""
    
    def __init__(self, channel: ChannelId, gain: float):
        self.channel = channel
        self.gain = GainNode(gain)
        self.analyser = AnalyserNode()
        self.sources: List[object] = []
    
    def connect(self, source) -> None:
        if any(existing is source for existing in self.sources):
            raise ValueError(f"Source already connected to {self.channel.value}")
        self.sources.append(source)
    
    def disconnect(self, source) -> None:
        self.sources = [existing for existing in self.sources if existing is not source]
    
    def render(self, frames: int, channels: int) -> np.ndarray:
        mix = np.zeros((frames, channels), dtype=np.float32)
        for source in self.sources:
            mix += source.pull(frames)
        return self.analyser.process(self.gain.process(mix))


class MasterSubscription:
    """One consumer of the master bus; drops the oldest block when it falls behind."""
    
    def __init__(self, stream: "MasterStream", max_blocks: int):
        self._stream = stream
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_blocks)
        self.closed = False
    
    def put(self, block: np.ndarray) -> None:
        try:
            self.queue.put_nowait(block)
        except asyncio.QueueFull:
            self.queue.get_nowait()  # Remove oldest
            self.queue.put_nowait(block)
    
    async def get(self) -> np.ndarray:
        return await self.queue.get()
    
    def close(self) -> None:
        self.closed = True
        self._stream.unsubscribe(self)
    
    def __aiter__(self):
        return self
    
    async def __anext__(self) -> np.ndarray:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()


class MasterStream:
    """Capturable output of the master bus (float32 blocks, frames x channels)."""
    
    def __init__(self, sample_rate: int, channels: int):
        self.sample_rate = sample_rate
        self.channels = channels
        self._subscribers: List[MasterSubscription] = []
    
    def subscribe(self, max_blocks: int = 256) -> MasterSubscription:
        subscription = MasterSubscription(self, max_blocks)
        self._subscribers.append(subscription)
        return subscription
    
    def unsubscribe(self, subscription: MasterSubscription) -> None:
        self._subscribers = [s for s in self._subscribers if s is not subscription]
    
    def publish(self, block: np.ndarray) -> None:
        for subscription in self._subscribers:
            subscription.put(block)
    
    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class MonitorOutput:
    """Plays master blocks on the local output device through PortAudio."""
    
    def __init__(self, sample_rate: int, channels: int, block_size: int, max_blocks: int = 8):
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise UnsupportedPlatform(f"Saída de áudio indisponível: {e}")
        
        self._blocks: Deque[np.ndarray] = collections.deque(maxlen=max_blocks)
        self._lock = threading.Lock()
        try:
            self._stream = sd.OutputStream(
                samplerate=sample_rate,
                channels=channels,
                blocksize=block_size,
                dtype="float32",
                callback=self._callback,
            )
            self._stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            raise UnsupportedPlatform(f"Saída de áudio indisponível: {e}")
    
    def _callback(self, outdata, frames, time_info, status):
        with self._lock:
            block = self._blocks.popleft() if self._blocks else None
        if block is None or block.shape[0] != frames:
            outdata.fill(0)
        else:
            outdata[:] = block
    
    def write(self, block: np.ndarray) -> None:
        with self._lock:
            self._blocks.append(block)
    
    def close(self) -> None:
        self._stream.stop()
        self._stream.close()


class AudioRuntime:
    """
    Renders all channel strips into the master bus one block at a time.
    
    Rendering runs on an asyncio task paced by the wall clock; control
    operations (gain changes, connect/disconnect) take effect on the next block.
    """
    
    def __init__(
        self,
        sample_rate: int,
        channels: int,
        block_size: int,
        gains: Dict[ChannelId, float],
        monitor: Optional[MonitorOutput] = None,
        realtime: bool = True
    ):
        """
        Initialize the runtime in the suspended state.
        
        Args:
            sample_rate: Render sample rate in Hz
            channels: Output channel count
            block_size: Frames per render block
            gains: Initial gain per channel
            monitor: Local output device, if monitoring is enabled
            realtime: Start a paced render task on resume (False renders only on demand)
        """
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = block_size
        self.state = RuntimeState.SUSPENDED
        self.strips = {channel: ChannelStrip(channel, gains.get(channel, 1.0)) for channel in ChannelId}
        self.master_stream = MasterStream(sample_rate, channels)
        self.master_analyser = AnalyserNode()
        self.monitor = monitor
        self.realtime = realtime
        self.blocks_rendered = 0
        self._render_task: Optional[asyncio.Task] = None
    
    @property
    def block_seconds(self) -> float:
        return self.block_size / self.sample_rate
    
    async def resume(self) -> None:
        if self.state == RuntimeState.CLOSED:
            raise UnsupportedPlatform("O contexto de áudio foi encerrado.")
        if self.state == RuntimeState.RUNNING:
            return
        self.state = RuntimeState.RUNNING
        if self.realtime:
            self._render_task = asyncio.create_task(self._render_loop())
        logger.info(f"Audio runtime running ({self.sample_rate} Hz, {self.block_size} frames/block)")
    
    async def suspend(self) -> None:
        if self.state == RuntimeState.RUNNING:
            self.state = RuntimeState.SUSPENDED
            await self._stop_render_task()
    
    async def close(self) -> None:
        self.state = RuntimeState.CLOSED
        await self._stop_render_task()
        if self.monitor is not None:
            self.monitor.close()
        logger.info("Audio runtime closed")
    
    def connect(self, channel: ChannelId, source) -> None:
        self.strips[channel].connect(source)
    
    def disconnect(self, channel: ChannelId, source) -> None:
        self.strips[channel].disconnect(source)
    
    def render_block(self) -> np.ndarray:
        """Render one block through every strip into the master bus."""
        master = np.zeros((self.block_size, self.channels), dtype=np.float32)
        for strip in self.strips.values():
            master += strip.render(self.block_size, self.channels)
        np.clip(master, -1.0, 1.0, out=master)
        self.master_analyser.process(master)
        
        if self.monitor is not None:
            self.monitor.write(master)
        self.master_stream.publish(master)
        self.blocks_rendered += 1
        return master
    
    async def _render_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while self.state == RuntimeState.RUNNING:
            try:
                self.render_block()
            except Exception as e:
                logger.error(f"Audio render error: {e}")
            deadline += self.block_seconds
            delay = deadline - loop.time()
            if delay < -1.0:
                # Fell far behind (e.g. process paused); resync instead of bursting
                deadline = loop.time()
                delay = 0.0
            await asyncio.sleep(max(0.0, delay))
    
    async def _stop_render_task(self) -> None:
        task, self._render_task = self._render_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
