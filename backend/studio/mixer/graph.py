"""Mixer routing graph: background, main, microphone and voice channels into one master bus."""
import asyncio
from typing import Callable, Dict, List, Optional
from studio.core.config import Settings, settings
from studio.core.errors import DeviceUnavailable, PlaybackBlocked, StudioError, UnsupportedPlatform
from studio.core.logging import logger
from studio.mixer.models import ChannelBinding, ChannelId, ChannelState, TransportState
from studio.mixer.runtime import AudioRuntime, MasterStream, MonitorOutput
from studio.mixer.sources import FFmpegMediaElement, MediaElement, MicrophoneSource

EndedCallback = Callable[[ChannelId, str], None]
TimeCallback = Callable[[ChannelState], None]

# Channels that play URLs through a media element
ELEMENT_CHANNELS = (ChannelId.BACKGROUND, ChannelId.MAIN, ChannelId.VOICE)


def default_runtime_factory(config: Settings) -> AudioRuntime:
    gains = {
        ChannelId.BACKGROUND: config.background_gain,
        ChannelId.MAIN: config.main_gain,
        ChannelId.MICROPHONE: config.microphone_gain,
        ChannelId.VOICE: config.voice_gain,
    }
    monitor = None
    if config.monitor_enabled:
        monitor = MonitorOutput(config.mixer_sample_rate, config.mixer_channels, config.mixer_block_size)
    return AudioRuntime(
        config.mixer_sample_rate,
        config.mixer_channels,
        config.mixer_block_size,
        gains,
        monitor=monitor,
    )


class MixGraph:
    """
    Owns the audio runtime and the fixed channel topology.
    
    The runtime and every channel's source binding are created at most once;
    later URL changes reuse the bound element so no second routing edge is
    ever added to a channel.
    """
    
    def __init__(
        self,
        config: Optional[Settings] = None,
        runtime_factory: Optional[Callable[[Settings], AudioRuntime]] = None,
        element_factory: Optional[Callable[[int, int], MediaElement]] = None,
        microphone_factory: Optional[Callable[[int, int], MicrophoneSource]] = None
    ):
        """
        Initialize the graph without touching any audio device.
        
        Args:
            config: Settings providing gains and runtime format
            runtime_factory: Builds the AudioRuntime (may raise UnsupportedPlatform)
            element_factory: Builds a media element for (sample_rate, channels)
            microphone_factory: Builds a capture source for (sample_rate, channels)
        """
        self.config = config or settings
        self._runtime_factory = runtime_factory or default_runtime_factory
        self._element_factory = element_factory or (
            lambda rate, channels: FFmpegMediaElement(rate, channels, self.config)
        )
        self._microphone_factory = microphone_factory or MicrophoneSource
        self.runtime: Optional[AudioRuntime] = None
        self.channels: Dict[ChannelId, ChannelState] = {
            ChannelId.BACKGROUND: ChannelState(ChannelId.BACKGROUND, self.config.background_gain),
            ChannelId.MAIN: ChannelState(ChannelId.MAIN, self.config.main_gain),
            ChannelId.MICROPHONE: ChannelState(ChannelId.MICROPHONE, self.config.microphone_gain),
            ChannelId.VOICE: ChannelState(ChannelId.VOICE, self.config.voice_gain),
        }
        self.bindings: Dict[ChannelId, ChannelBinding] = {}
        self.microphone_active = False
        self.status: Optional[str] = None
        self._microphone: Optional[MicrophoneSource] = None
        self._ended_callbacks: List[EndedCallback] = []
        self._time_callbacks: List[TimeCallback] = []
        self._one_shot: Optional[asyncio.Future] = None
        self._runtime_lock = asyncio.Lock()
    
    # Runtime
    
    async def ensure_runtime(self) -> AudioRuntime:
        """
        Get or create the audio runtime and resume it.
        
        Returns:
            The shared runtime
            
        Raises:
            UnsupportedPlatform: If no audio runtime can be created
        """
        async with self._runtime_lock:
            if self.runtime is None:
                try:
                    runtime = self._runtime_factory(self.config)
                except UnsupportedPlatform as e:
                    self.status = e.message
                    logger.error(f"Audio runtime unavailable: {e.message}")
                    raise
                self.runtime = runtime
                logger.info("Audio runtime created")
            await self.runtime.resume()
            return self.runtime
    
    async def close(self) -> None:
        """Tear down the runtime, elements and microphone."""
        self._settle_one_shot(False)
        self.disconnect_microphone()
        for binding in self.bindings.values():
            binding.source.close()
            binding.connected = False
        self.bindings.clear()
        if self.runtime is not None:
            await self.runtime.close()
            self.runtime = None
    
    # Sources and gains
    
    def attach_channel_source(self, channel: ChannelId, url: str) -> MediaElement:
        """
        Bind a media element to the channel (once) and point it at `url`.
        
        The element starts buffering but does not play.
        
        Args:
            channel: Background, main or voice
            url: Media URL
            
        Returns:
            The channel's element
        """
        if channel not in ELEMENT_CHANNELS:
            raise ValueError(f"Channel {channel.value} does not take media URLs")
        if self.runtime is None:
            raise UnsupportedPlatform("Contexto de áudio não iniciado.")
        
        binding = self.bindings.get(channel)
        if binding is None:
            element = self._element_factory(self.runtime.sample_rate, self.runtime.channels)
            element.add_ended_listener(lambda source, channel=channel: self._on_element_ended(channel, source))
            element.add_time_listener(lambda source, channel=channel: self._on_element_time(channel, source))
            binding = ChannelBinding(source=element, target=channel)
            self.runtime.connect(channel, element)
            binding.connected = True
            self.bindings[channel] = binding
            logger.debug(f"Bound element to {channel.value}")
        
        element = binding.source
        element.load(url)
        state = self.channels[channel]
        state.url = url
        state.current_time = 0.0
        state.duration = 0.0
        state.transport = TransportState.LOADING
        return element
    
    def load(self, channel: ChannelId, url: str) -> None:
        """Cue `url` on a channel without playing it."""
        self.attach_channel_source(channel, url)
    
    def set_channel_gain(self, channel: ChannelId, value: float) -> None:
        """Set a channel's gain, clamped to [0, 1], effective from the next block."""
        value = min(1.0, max(0.0, float(value)))
        self.channels[channel].gain = value
        if self.runtime is not None:
            self.runtime.strips[channel].gain.set_value(value)
    
    def ramp_channel_gain(self, channel: ChannelId, value: float, seconds: float) -> None:
        """Fade a channel's gain linearly to `value` over `seconds`."""
        value = min(1.0, max(0.0, float(value)))
        self.channels[channel].gain = value
        if self.runtime is not None:
            self.runtime.strips[channel].gain.ramp_to(value, seconds, self.runtime.sample_rate)
    
    def level(self, channel: ChannelId) -> int:
        """Meter reading (0-100) from the channel's analysis tap."""
        if self.runtime is None:
            return 0
        return self.runtime.strips[channel].analyser.level()
    
    # Transport
    
    async def play(self, channel: ChannelId, url: Optional[str] = None) -> bool:
        """
        Play `url` (or the cued URL) from position 0.
        
        Returns:
            True if playback started; False with `status` set when blocked
        """
        try:
            await self.ensure_runtime()
            target = url or self.channels[channel].url
            if not target:
                raise PlaybackBlocked("Nenhuma faixa carregada.")
            element = self.attach_channel_source(channel, target)
            await element.play()
        except PlaybackBlocked as e:
            self.channels[channel].transport = TransportState.STOPPED
            self.status = e.message
            logger.warning(f"Playback blocked on {channel.value}: {e.message}")
            return False
        except UnsupportedPlatform as e:
            self.status = e.message
            return False
        
        self.channels[channel].transport = TransportState.PLAYING
        logger.info(f"{channel.value}: playing {target}")
        return True
    
    def stop(self, channel: ChannelId) -> None:
        binding = self.bindings.get(channel)
        if binding is not None:
            binding.source.pause()
        self.channels[channel].transport = TransportState.STOPPED
        if channel == ChannelId.VOICE:
            self._settle_one_shot(False)
    
    async def toggle(self, channel: ChannelId) -> bool:
        """
        Pause a playing channel or resume a paused one.
        
        Returns:
            True if the channel is playing afterwards
        """
        binding = self.bindings.get(channel)
        if binding is None or not binding.source.src:
            return False
        if self.channels[channel].playing:
            self.stop(channel)
            return False
        try:
            await self.ensure_runtime()
            await binding.source.play()
        except StudioError as e:
            self.status = e.message
            return False
        self.channels[channel].transport = TransportState.PLAYING
        return True
    
    def seek(self, channel: ChannelId, seconds: float) -> None:
        binding = self.bindings.get(channel)
        if binding is None:
            return
        binding.source.seek(seconds)
        self.channels[channel].current_time = binding.source.current_time
    
    async def wait_until_playing(self, channel: ChannelId, timeout: float) -> bool:
        """
        Wait until the channel reports playback progress.
        
        Returns:
            False if `timeout` elapses first
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            state = self.channels[channel]
            if state.playing and state.current_time > 0:
                return True
            await asyncio.sleep(0.05)
        return False
    
    # Microphone
    
    async def connect_microphone(self) -> None:
        """
        Capture the default input device into the microphone channel.
        
        Raises:
            DeviceUnavailable: If the device cannot be opened; nothing stays connected
        """
        if self.microphone_active:
            return
        runtime = await self.ensure_runtime()
        microphone = self._microphone_factory(runtime.sample_rate, runtime.channels)
        try:
            microphone.open()
        except DeviceUnavailable as e:
            self.status = e.message
            logger.error(f"Microphone unavailable: {e.message}")
            raise
        runtime.connect(ChannelId.MICROPHONE, microphone)
        self._microphone = microphone
        self.microphone_active = True
        self.channels[ChannelId.MICROPHONE].transport = TransportState.PLAYING
    
    def disconnect_microphone(self) -> None:
        microphone, self._microphone = self._microphone, None
        if microphone is not None:
            if self.runtime is not None:
                self.runtime.disconnect(ChannelId.MICROPHONE, microphone)
            microphone.close()
        self.microphone_active = False
        self.channels[ChannelId.MICROPHONE].transport = TransportState.STOPPED
    
    # Master and one-shots
    
    def capture_master_stream(self) -> MasterStream:
        """
        The master bus's capturable stream; stable for the session.
        
        Raises:
            UnsupportedPlatform: Before ensure_runtime
        """
        if self.runtime is None:
            raise UnsupportedPlatform("Mix final indisponível. Reproduza alguma faixa para ativar o áudio.")
        return self.runtime.master_stream
    
    async def play_one_shot(self, url: str, gain: Optional[float] = None) -> bool:
        """
        Play a narration through the voice channel, cutting off any previous one.
        
        Args:
            url: Playable audio URL
            gain: Voice channel gain for this one-shot
            
        Returns:
            True when it played to the end, False if blocked or superseded
        """
        if self._one_shot is not None and not self._one_shot.done():
            self.stop(ChannelId.VOICE)
        self._one_shot = None
        
        if gain is not None:
            self.set_channel_gain(ChannelId.VOICE, gain)
        
        future = asyncio.get_running_loop().create_future()
        self._one_shot = future
        if not await self.play(ChannelId.VOICE, url):
            if not future.done():
                future.set_result(False)
            return False
        return await future
    
    # Observers
    
    def add_ended_listener(self, callback: EndedCallback) -> None:
        self._ended_callbacks.append(callback)
    
    def add_time_listener(self, callback: TimeCallback) -> None:
        self._time_callbacks.append(callback)
    
    def _on_element_ended(self, channel: ChannelId, element: MediaElement) -> None:
        state = self.channels[channel]
        state.transport = TransportState.STOPPED
        state.current_time = element.current_time
        url = element.src or ""
        
        if channel == ChannelId.VOICE:
            self._settle_one_shot(True)
        
        logger.info(f"{channel.value}: ended {url}")
        for callback in list(self._ended_callbacks):
            callback(channel, url)
    
    def _on_element_time(self, channel: ChannelId, element: MediaElement) -> None:
        state = self.channels[channel]
        state.current_time = element.current_time
        state.duration = element.duration
        for callback in list(self._time_callbacks):
            callback(state)
    
    def _settle_one_shot(self, completed: bool) -> None:
        if self._one_shot is not None and not self._one_shot.done():
            self._one_shot.set_result(completed)
