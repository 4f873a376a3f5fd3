"""Memory estimation used to skip strategies that would not fit.

The estimate is deliberately conservative. A strategy whose estimate exceeds
``render_memory_safety_ratio`` of the container limit is skipped before any
work starts, except for the last strategy, which always runs.
"""

import logging
from typing import Optional

from timeline_export.config import Settings, get_settings

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# cgroup v2 first, then v1
CGROUP_MEMORY_FILES = ("/sys/fs/cgroup/memory.max", "/sys/fs/cgroup/memory/memory.limit_in_bytes")


def _parse_bitrate(value: str) -> int:
    """Parse an FFmpeg bitrate such as ``8M`` or ``128k`` to bits per second."""
    value = value.strip()
    multipliers = {"k": 1000, "m": 1000 ** 2, "g": 1000 ** 3}
    suffix = value[-1:].lower()
    if suffix in multipliers:
        return int(float(value[:-1]) * multipliers[suffix])
    return int(float(value))


def get_container_memory_limit(settings: Optional[Settings] = None) -> int:
    """Detect the memory available to the export.

    Returns:
        Memory limit in bytes. The settings override wins, then the cgroup
        limit; falls back to 2 GiB if detection fails.
    """
    settings = settings or get_settings()
    if settings.render_max_memory_bytes > 0:
        return settings.render_max_memory_bytes

    for path in CGROUP_MEMORY_FILES:
        try:
            with open(path) as f:
                raw = f.read().strip()
                if raw == "max":
                    # "max" means unlimited, assume 8 GiB
                    return 8 * 1024 ** 3
                limit = int(raw)
                if limit > 0:
                    return limit
        except (FileNotFoundError, ValueError, PermissionError):
            continue

    return 2 * 1024 ** 3


def estimate_export_memory(
    duration_s: float,
    width: int,
    height: int,
    audio_clip_count: int,
    preserve_alpha: bool,
    settings: Optional[Settings] = None,
) -> int:
    """Estimate peak memory usage of one export attempt.

    Memory components:
    1. Base FFmpeg process overhead: ~80 MB
    2. Frames in flight between renderer, pipe and encoder (RGBA or RGB)
    3. Encoder lookahead: VP9 with alpha keeps roughly twice the frames of VP8
    4. Encoded video held in memory until the mux: bitrate * duration
    5. Audio: ~4 MB of filter graph buffers per clip plus the encoded track

    Returns:
        Estimated peak memory in bytes.
    """
    settings = settings or get_settings()
    bytes_per_pixel = 4 if preserve_alpha else 3
    frame_bytes = width * height * bytes_per_pixel

    base_bytes = 80 * MB
    in_flight_bytes = 3 * frame_bytes
    encoder_frames = 16 if preserve_alpha else 8
    encoder_bytes = encoder_frames * frame_bytes
    video_stream_bytes = int(_parse_bitrate(settings.video_bitrate) / 8 * duration_s)
    audio_bytes = (
        audio_clip_count * 4 * MB
        + int(_parse_bitrate(settings.audio_bitrate) / 8 * duration_s)
    )

    total = base_bytes + in_flight_bytes + encoder_bytes + video_stream_bytes + audio_bytes

    # 20% safety margin on top of the conservative estimate
    total = int(total * 1.2)

    logger.info(
        f"[MEMORY EST] duration={duration_s:.1f}s, {width}x{height}, "
        f"audio_clips={audio_clip_count}, alpha={preserve_alpha}, estimate={total / MB:.0f} MB"
    )
    return total


def memory_safety_limit(settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    return int(get_container_memory_limit(settings) * settings.render_memory_safety_ratio)
