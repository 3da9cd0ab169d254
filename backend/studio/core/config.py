"""Configuration settings for the Radio Studio backend."""
from pydantic_settings import BaseSettings
from typing import Optional
from urllib.parse import quote


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Server settings
    host: str = "0.0.0.0"
    port: int = 8081
    
    # RTMP destination (explicit URL wins over host + key)
    rtmp_url: str = ""
    rtmp_host: str = ""
    rtmp_app: str = "live"
    rtmp_key: str = ""
    rtmp_port: str = ""
    
    # External binaries
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    ytdlp_path: str = "yt-dlp"
    
    # Audio egress settings
    audio_bitrate: str = "128k"
    audio_sample_rate: int = 48000
    audio_channels: int = 2
    
    # Synthetic video track (RTMP ingest requires a video stream)
    video_resolution: str = "1280x720"
    video_frame_rate: int = 30
    video_color: str = "#111111"
    video_codec: str = "libx264"
    video_preset: str = "veryfast"
    video_tune: str = "stillimage"
    video_bitrate: str = "600k"
    video_maxrate: str = "800k"
    video_bufsize: str = "1200k"
    video_gop: int = 60
    
    # Relay settings
    relay_start_timeout_seconds: float = 10.0
    
    # Resolver settings
    resolver_cache_ttl_seconds: float = 600.0  # 10 minutes
    proxy_timeout_seconds: float = 30.0
    
    # Mixer settings
    mixer_sample_rate: int = 48000
    mixer_channels: int = 2
    mixer_block_size: int = 1024  # samples per render block
    monitor_enabled: bool = False  # play the master bus on the local output device
    background_gain: float = 0.5
    main_gain: float = 0.8
    microphone_gain: float = 0.7
    voice_gain: float = 1.0
    
    # Auto DJ settings
    autodj_liveness_interval_seconds: float = 5.0
    autodj_pre_end_seconds: float = 5.0
    autodj_duck_floor: float = 0.2
    autodj_fade_seconds: float = 0.4
    autodj_narration_overlap: bool = True  # speak over the start of the next track
    autodj_now_playing_timeout_seconds: float = 3.0
    autodj_narration_timeout_seconds: float = 60.0  # upper bound on one narration
    station_name: str = "Radio Royal"
    host_name: str = "Auto DJ"
    
    # Speech synthesis service ("text in, playable URL out")
    tts_url_template: Optional[str] = "http://localhost:5002/api/tts?text={text}"
    
    # Broadcast client settings
    relay_ws_url: str = "ws://localhost:8081/"
    relay_chunk_interval_ms: int = 500
    
    # Logging
    log_level: str = "INFO"
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
    
    @property
    def final_rtmp_url(self) -> str:
        """
        Resolve the RTMP destination.
        
        Returns:
            RTMP_URL if set, else rtmp://host[:port]/app/key when host and key
            are both set, else an empty string
        """
        if self.rtmp_url:
            return self.rtmp_url
        if self.rtmp_host and self.rtmp_key:
            host_port = f"{self.rtmp_host}:{self.rtmp_port}" if self.rtmp_port else self.rtmp_host
            return f"rtmp://{host_port}/{self.rtmp_app}/{quote(self.rtmp_key, safe='')}"
        return ""


settings = Settings()
