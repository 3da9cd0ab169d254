"""Mixer data models."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ChannelId(str, Enum):
    """Channels feeding the master bus."""
    BACKGROUND = "background"
    MAIN = "main"
    MICROPHONE = "microphone"
    VOICE = "voice"


class TransportState(str, Enum):
    STOPPED = "stopped"
    LOADING = "loading"
    PLAYING = "playing"


@dataclass
class ChannelState:
    """Operator-visible state of one channel."""
    channel: ChannelId
    gain: float
    url: Optional[str] = None
    transport: TransportState = TransportState.STOPPED
    current_time: float = 0.0  # seconds
    duration: float = 0.0  # seconds, 0 when unknown
    
    @property
    def playing(self) -> bool:
        return self.transport == TransportState.PLAYING
    
    @property
    def remaining(self) -> Optional[float]:
        """Seconds left, or None when the duration is unknown."""
        if self.duration <= 0:
            return None
        return max(0.0, self.duration - self.current_time)


@dataclass
class ChannelBinding:
    """Which source node feeds which channel; created once per channel."""
    source: object
    target: ChannelId
    connected: bool = False
