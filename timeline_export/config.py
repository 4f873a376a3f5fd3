from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Timeline Export"
    app_version: str = "0.1.0"

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Default output geometry
    export_width: int = 1920
    export_height: int = 1080
    export_frame_rate: float = 15.0

    # Video capture (single container: WebM)
    video_container: str = "webm"
    video_mime_type: str = "video/webm"
    video_bitrate: str = "8M"
    alpha_video_codec: str = "libvpx-vp9"
    alpha_pixel_format: str = "yuva420p"
    opaque_video_codec: str = "libvpx"
    opaque_pixel_format: str = "yuv420p"

    # Audio
    audio_codec: str = "libopus"
    audio_bitrate: str = "128k"
    audio_sample_rate: int = 48000
    audio_channels: int = 2
    audio_container: str = "ogg"
    audio_mime_type: str = "audio/ogg"

    # Frame capture pacing
    # Renderer cycles awaited after each seek before the surface is read
    capture_settle_cycles: int = 2
    # Delay between frames when the degraded strategy drops the scheduler
    capture_fixed_delay_ms: int = 1

    # Timeouts (hang detection)
    renderer_timeout_min_s: float = 5.0
    renderer_timeout_frame_multiple: float = 50.0
    encoder_timeout_base_s: float = 60.0
    encoder_timeout_per_media_s: float = 4.0

    # Render memory management (OOM prevention)
    # Maximum memory budget for a single export (in bytes). 0 = auto-detect from cgroup.
    render_max_memory_bytes: int = 0
    # Strategies whose estimate exceeds this fraction of the limit are skipped
    render_memory_safety_ratio: float = 0.80
    # Maximum threads for FFmpeg (limits per-thread buffer memory)
    render_ffmpeg_threads: int = 2

    # Scratch space for the codec engine
    work_dir_prefix: str = "timeline_export_"


@lru_cache
def get_settings() -> Settings:
    return Settings()
