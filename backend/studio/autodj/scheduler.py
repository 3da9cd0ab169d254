"""Auto DJ: picks the next main track and wraps it in narrated transitions."""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Set
from studio.autodj.script import ProgramStep, ad_hoc_line, coming_up_line, scripted_line
from studio.autodj.speech import SpeechSynthesizer, TemplateSpeechSynthesizer
from studio.core.config import Settings, settings
from studio.core.errors import LibraryEmpty
from studio.core.logging import logger
from studio.mixer.models import ChannelId, ChannelState


class AutoDjPhase(str, Enum):
    IDLE = "idle"
    TRANSITIONING_SCRIPTED = "transitioning-scripted"
    TRANSITIONING_AD_HOC = "transitioning-ad-hoc"
    NARRATING = "narrating"


@dataclass
class Track:
    """A library entry."""
    title: str
    url: str


@dataclass
class AutoDjState:
    """Scheduler counters; mutated only by the scheduler."""
    busy: bool = False
    play_count: int = 0
    program_step: ProgramStep = ProgramStep.OPENING
    library_index: int = -1
    background_index: int = -1
    announced_url: Optional[str] = None
    phase: AutoDjPhase = AutoDjPhase.IDLE


class AutoDjScheduler:
    """
    Serializes track transitions through one busy-guarded routine.
    
    Entry points: on_main_ended, on_liveness_tick, on_toggle (plus
    on_main_stopped and on_time_update). A call arriving while a transition
    is in flight, or while the main channel plays, is a no-op.
    """
    
    def __init__(
        self,
        mixer,
        speech: Optional[SpeechSynthesizer] = None,
        main_library: Optional[List[Track]] = None,
        background_library: Optional[List[Track]] = None,
        config: Optional[Settings] = None
    ):
        """
        Initialize the scheduler (disabled).
        
        Args:
            mixer: MixGraph (or a double with the same transport surface)
            speech: Announcer speech service
            main_library: Tracks for the main channel, played round robin
            background_library: Beds for the background channel
            config: Settings with the Auto DJ timings
        """
        self.mixer = mixer
        self.speech = speech or TemplateSpeechSynthesizer()
        self.main_library: List[Track] = list(main_library or [])
        self.background_library: List[Track] = list(background_library or [])
        self.config = config or settings
        self.state = AutoDjState()
        self.enabled = False
        self.status: Optional[str] = None
        self._liveness_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._duck_depth = 0
        self._restore_gain = 0.0
    
    def attach(self) -> None:
        """Subscribe to the mixer's ended and time-update signals."""
        self.mixer.add_ended_listener(self._handle_ended)
        self.mixer.add_time_listener(self._handle_time)
    
    def set_libraries(
        self,
        main: Optional[List[Track]] = None,
        background: Optional[List[Track]] = None
    ) -> None:
        """Replace libraries; the round-robin index is clamped to the new size."""
        if main is not None:
            self.main_library = list(main)
            self.state.library_index = min(self.state.library_index, len(self.main_library) - 1)
        if background is not None:
            self.background_library = list(background)
            self.state.background_index = min(self.state.background_index, len(self.background_library) - 1)
    
    @property
    def next_track(self) -> Optional[Track]:
        if not self.main_library:
            return None
        return self.main_library[(self.state.library_index + 1) % len(self.main_library)]
    
    # Entry points
    
    async def on_toggle(self, enabled: bool) -> None:
        """
        Enable or disable Auto DJ.
        
        Disabling only prevents new transitions; one in flight runs to completion.
        """
        self.enabled = enabled
        if enabled:
            logger.info("Auto DJ enabled")
            if self._liveness_task is None or self._liveness_task.done():
                self._liveness_task = asyncio.create_task(self._liveness_loop())
            await self.on_liveness_tick()
        else:
            logger.info("Auto DJ disabled")
            task, self._liveness_task = self._liveness_task, None
            if task is not None and task is not asyncio.current_task():
                task.cancel()
    
    async def on_main_ended(self, url: Optional[str] = None) -> bool:
        """The main channel finished `url` naturally."""
        if not self.enabled:
            return False
        return await self._run_transition("ended", ended_url=url)
    
    async def on_main_stopped(self) -> bool:
        """The main channel stopped without reaching the end."""
        if not self.enabled:
            return False
        return await self._run_transition("stopped")
    
    async def on_liveness_tick(self) -> bool:
        """Periodic check: restart the main channel if it sits idle."""
        if not self.enabled or not self.main_library:
            return False
        return await self._run_transition("liveness")
    
    async def on_time_update(self, state: ChannelState) -> bool:
        """
        Speak a "coming up next" line once per track as it nears its end.
        
        Returns:
            True if this update triggered the pre-end narration
        """
        if not self._should_pre_announce(state):
            return False
        self.state.announced_url = state.url
        await self._pre_end_narration(state.url)
        return True
    
    async def shutdown(self) -> None:
        """Disable and wait for spawned narrations and transitions."""
        await self.on_toggle(False)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
    
    # Transition routine
    
    async def _run_transition(self, reason: str, ended_url: Optional[str] = None) -> bool:
        if self.state.busy or self.mixer.channels[ChannelId.MAIN].playing:
            return False
        if not self.main_library:
            self.status = LibraryEmpty().message
            logger.warning(f"Auto DJ ({reason}): library empty")
            return False
        
        # No await between the busy check and here
        self.state.busy = True
        
        urls = [track.url for track in self.main_library]
        if ended_url in urls:
            self.state.library_index = urls.index(ended_url)
        index = (self.state.library_index + 1) % len(self.main_library)
        track = self.main_library[index]
        started = False
        
        try:
            self.state.library_index = index
            self.state.announced_url = None
            logger.info(f"Auto DJ ({reason}): next is {track.title}")
            
            await self._ensure_bed()
            
            if self.state.program_step < ProgramStep.DEFAULT:
                self.state.phase = AutoDjPhase.TRANSITIONING_SCRIPTED
                text = scripted_line(
                    self.state.program_step,
                    track.title,
                    self.config.station_name,
                    self.config.host_name,
                    self.state.play_count,
                )
                self.state.program_step = ProgramStep(self.state.program_step + 1)
            else:
                self.state.phase = AutoDjPhase.TRANSITIONING_AD_HOC
                text = ad_hoc_line(track.title, self.config.station_name, self.state.play_count)
            self.state.play_count += 1
            
            started = await self._present(track, text)
            self.status = f"Tocando: {track.title}"
        except Exception as e:
            logger.error(f"Auto DJ transition failed: {e}")
            self.status = f"Auto DJ: falha na transição ({e})"
        finally:
            try:
                if not started and not self.mixer.channels[ChannelId.MAIN].playing:
                    logger.info(f"Auto DJ fallback: starting {track.title} directly")
                    started = await self.mixer.play(ChannelId.MAIN, track.url)
            finally:
                self.state.busy = False
                self.state.phase = AutoDjPhase.IDLE
        return started
    
    async def _present(self, track: Track, text: Optional[str]) -> bool:
        if text is None:
            return await self.mixer.play(ChannelId.MAIN, track.url)
        
        if self.config.autodj_narration_overlap:
            if not await self.mixer.play(ChannelId.MAIN, track.url):
                return False
            await self.mixer.wait_until_playing(ChannelId.MAIN, self.config.autodj_now_playing_timeout_seconds)
            await self._speak_over_main(text)
            return True
        
        await self._speak(text)
        return await self.mixer.play(ChannelId.MAIN, track.url)
    
    async def _ensure_bed(self) -> None:
        if not self.background_library or self.mixer.channels[ChannelId.BACKGROUND].playing:
            return
        index = (self.state.background_index + 1) % len(self.background_library)
        bed = self.background_library[index]
        try:
            if await self.mixer.play(ChannelId.BACKGROUND, bed.url):
                self.state.background_index = index
            else:
                logger.warning(f"Background bed unavailable: {bed.title}")
        except Exception as e:
            logger.warning(f"Background bed failed, continuing without it: {e}")
    
    # Narration
    
    async def _speak(self, text: str) -> bool:
        previous = self.state.phase
        self.state.phase = AutoDjPhase.NARRATING
        try:
            url = await self.speech.synthesize(text)
            return await self._play_narration(url)
        finally:
            self.state.phase = previous
    
    async def _speak_over_main(self, text: str) -> bool:
        url = await self.speech.synthesize(text)
        await self._duck()
        previous = self.state.phase
        self.state.phase = AutoDjPhase.NARRATING
        try:
            return await self._play_narration(url)
        finally:
            self.state.phase = previous
            await self._unduck()
    
    async def _play_narration(self, url: str) -> bool:
        timeout = self.config.autodj_narration_timeout_seconds
        try:
            return await asyncio.wait_for(self.mixer.play_one_shot(url, self.config.voice_gain), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Narration did not finish within {timeout}s, cutting it off")
            self.mixer.stop(ChannelId.VOICE)
            return False
    
    async def _duck(self) -> None:
        if self._duck_depth == 0:
            self._restore_gain = self.mixer.channels[ChannelId.MAIN].gain
        self._duck_depth += 1
        floor = min(self.config.autodj_duck_floor, self._restore_gain)
        self.mixer.ramp_channel_gain(ChannelId.MAIN, floor, self.config.autodj_fade_seconds)
        await asyncio.sleep(self.config.autodj_fade_seconds)
    
    async def _unduck(self) -> None:
        self._duck_depth = max(0, self._duck_depth - 1)
        if self._duck_depth == 0:
            self.mixer.ramp_channel_gain(ChannelId.MAIN, self._restore_gain, self.config.autodj_fade_seconds)
            await asyncio.sleep(self.config.autodj_fade_seconds)
    
    def _should_pre_announce(self, state: ChannelState) -> bool:
        if not self.enabled or state.channel != ChannelId.MAIN or not state.playing or not state.url:
            return False
        if state.url == self.state.announced_url:
            return False
        remaining = state.remaining
        return remaining is not None and remaining < self.config.autodj_pre_end_seconds
    
    async def _pre_end_narration(self, url: str) -> None:
        upcoming = self.next_track
        if upcoming is None:
            return
        logger.info(f"Auto DJ: pre-end narration for {url}")
        try:
            await self._speak_over_main(coming_up_line(upcoming.title))
        except Exception as e:
            logger.warning(f"Pre-end narration failed: {e}")
            self.status = f"Auto DJ: falha na locução ({e})"
    
    # Mixer signal handlers (called synchronously from the render task)
    
    def _handle_ended(self, channel: ChannelId, url: str) -> None:
        if not self.enabled:
            return
        if channel == ChannelId.MAIN:
            self._spawn(self.on_main_ended(url))
        elif channel == ChannelId.BACKGROUND:
            self._spawn(self._ensure_bed())
    
    def _handle_time(self, state: ChannelState) -> None:
        if self._should_pre_announce(state):
            # Mark before spawning so the next update cannot announce again
            self.state.announced_url = state.url
            self._spawn(self._pre_end_narration(state.url))
    
    def _spawn(self, coroutine) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
    
    async def _liveness_loop(self) -> None:
        while self.enabled:
            await asyncio.sleep(self.config.autodj_liveness_interval_seconds)
            await self.on_liveness_tick()
