"""Final mux of the captured video and the mixed audio track.

Both streams are already encoded, so they are stream-copied into one WebM
container. Muxing is best effort: whatever goes wrong, the caller still gets
the video stream.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from timeline_export.codec.engine import FFmpegEngine, format_seconds
from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import CodecCommandError, EncoderUnresponsiveError
from timeline_export.render.audio_mixer import AudioMixResult, StageProgress
from timeline_export.render.frame_capture import CaptureResult

logger = logging.getLogger(__name__)

VIDEO_INPUT = "combine_video.webm"
AUDIO_INPUT = "combine_audio.ogg"
OUTPUT_NAME = "combined.webm"

# Container timestamps are rounded to the muxer time base (1 ms for WebM)
DURATION_TOLERANCE_S = 0.05


@dataclass
class CombineResult:
    data: bytes
    mime_type: str
    has_audio: bool
    fallback_reason: Optional[str] = None
    # Container duration of the muxed artifact, when ffprobe could read it
    measured_duration: Optional[float] = None


class StreamCombiner:
    """Stream-copies video and audio into the final artifact."""

    def __init__(self, engine: FFmpegEngine, settings: Optional[Settings] = None):
        self.engine = engine
        self.settings = settings or get_settings()

    def build_mux_command(self, video_name: str, audio_name: str, duration: float, output_name: str) -> list[str]:
        """Build the stream-copy mux command without executing it."""
        return [
            "-i", video_name,
            "-i", audio_name,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c", "copy",
            "-t", format_seconds(duration),
            "-shortest",
            "-avoid_negative_ts", "make_zero",
            "-f", self.settings.video_container,
            output_name,
        ]

    async def combine(
        self,
        video: CaptureResult,
        audio: Optional[AudioMixResult],
        duration: float,
        on_progress: Optional[StageProgress] = None,
    ) -> CombineResult:
        """
        Mux ``video`` and ``audio`` into one artifact no longer than ``duration``.

        Never raises for codec failures: any mux problem returns the video
        stream unchanged with ``fallback_reason`` set.
        """
        if audio is None or not audio.data:
            logger.info("[COMBINE] No audio track, returning video only")
            if on_progress:
                on_progress(1.0, "No audio to combine")
            return CombineResult(data=video.data, mime_type=video.mime_type, has_audio=False)

        if on_progress:
            on_progress(0.0, "Combining video and audio")

        try:
            self.engine.write_file(VIDEO_INPUT, video.data)
            self.engine.write_file(AUDIO_INPUT, audio.data)
            await self.engine.run(
                self.build_mux_command(VIDEO_INPUT, AUDIO_INPUT, duration, OUTPUT_NAME),
                media_seconds=duration,
            )
            data = self.engine.read_file(OUTPUT_NAME) if self.engine.has_file(OUTPUT_NAME) else b""
            if not data:
                raise ValueError("mux produced no output")
            measured = await self._check_duration(duration)
        except Exception as e:
            reason = f"Audio could not be combined ({e}); exported video without audio"
            logger.warning(f"[COMBINE] Mux failed, returning video only: {e}")
            if on_progress:
                on_progress(1.0, "Combining failed, using video only")
            return CombineResult(
                data=video.data,
                mime_type=video.mime_type,
                has_audio=False,
                fallback_reason=reason,
            )
        finally:
            for name in (VIDEO_INPUT, AUDIO_INPUT, OUTPUT_NAME):
                self.engine.delete_file(name)

        logger.info(f"[COMBINE] Muxed {len(video.data)}B video + {len(audio.data)}B audio -> {len(data)}B")
        if on_progress:
            on_progress(1.0, "Video and audio combined")
        return CombineResult(
            data=data,
            mime_type=self.settings.video_mime_type,
            has_audio=True,
            measured_duration=measured,
        )

    async def _check_duration(self, duration: float) -> Optional[float]:
        """Measure the muxed artifact and warn if it runs past the export duration."""
        try:
            muxed = await self.engine.probe_duration(OUTPUT_NAME)
        except (CodecCommandError, EncoderUnresponsiveError, OSError) as e:
            # The -t cap still bounds the artifact
            logger.warning(f"[COMBINE] Could not probe muxed duration: {e}")
            return None
        if muxed > duration + DURATION_TOLERANCE_S:
            logger.warning(f"[COMBINE] Muxed output is {muxed:.3f}s, longer than the {duration:.3f}s export")
        else:
            logger.debug(f"[COMBINE] Muxed duration {muxed:.3f}s (export {duration:.3f}s)")
        return muxed
