"""
Audio mixing stage using FFmpeg.

This module handles:
- Decoding every audio source (audio files and video containers) to PCM
- Positioning each clip on the timeline (trim, delay, pad)
- Additive mixing of overlapping clips
- Encoding the mix to Opus in Ogg

Audio failures never stop an export: unreadable or undecodable clips are
dropped and a failed mix yields no audio track at all. A video whose
container has no audio stream is simply silent and is not counted as
dropped. Only resource exhaustion and encoder timeouts propagate.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from timeline_export.codec.engine import FFmpegEngine, format_seconds, is_missing_stream
from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import CodecCommandError, SourceUnavailableError
from timeline_export.schemas.clip import Clip, ClipKind
from timeline_export.utils.cancellation import raise_if_cancelled

logger = logging.getLogger(__name__)

StageProgress = Callable[[float, str], None]

# Share of stage progress spent decoding sources; the rest is the mix itself
PREPARE_SHARE = 0.8


@dataclass
class AudioClipData:
    """Audio clip data for mixing."""

    clip_id: str
    start_s: float
    duration_s: float
    source: Path | bytes | None
    from_video: bool = False

    @classmethod
    def from_clip(cls, clip: Clip) -> "AudioClipData":
        return cls(
            clip_id=clip.id,
            start_s=clip.start_time,
            duration_s=clip.duration,
            source=clip.raw_source,
            from_video=clip.is_derived_from_video or clip.kind == ClipKind.VIDEO,
        )


@dataclass
class AudioMixResult:
    """Encoded audio track produced by the mix stage."""

    data: bytes
    mime_type: str
    clip_count: int
    dropped_clip_ids: list[str] = field(default_factory=list)
    silent_clip_ids: list[str] = field(default_factory=list)


class AudioMixStage:
    """
    FFmpeg-based mixer for timeline audio clips.

    Every clip becomes one filter chain:
        atrim -> asetpts -> adelay (start offset) -> apad (to export length)
    and all chains are summed with ``amix`` (normalize=0, so overlaps add).
    """

    def __init__(self, engine: FFmpegEngine, settings: Optional[Settings] = None):
        self.engine = engine
        self.settings = settings or get_settings()
        self.sample_rate = self.settings.audio_sample_rate
        # Video-derived clips whose container carries no audio stream (last mix)
        self.silent_clip_ids: list[str] = []

    @property
    def mime_type(self) -> str:
        return self.settings.audio_mime_type

    def _encode_args(self) -> list[str]:
        return [
            "-c:a", self.settings.audio_codec,
            "-b:a", self.settings.audio_bitrate,
            "-ar", str(self.sample_rate),
            "-ac", str(self.settings.audio_channels),
            "-f", self.settings.audio_container,
        ]

    def build_prepare_command(self, clip: AudioClipData, input_name: str, output_name: str) -> list[str]:
        """Decode one source to PCM WAV, demuxing the first audio stream."""
        return [
            "-i", input_name,
            "-vn",
            "-map", "0:a:0",
            "-ac", str(self.settings.audio_channels),
            "-ar", str(self.sample_rate),
            "-c:a", "pcm_s16le",
            "-t", format_seconds(clip.duration_s),
            output_name,
        ]

    def build_passthrough_command(self, input_name: str, duration: float, output_name: str) -> list[str]:
        """Trim and encode a single clip that already covers the export."""
        return [
            "-i", input_name,
            "-t", format_seconds(duration),
            *self._encode_args(),
            output_name,
        ]

    def build_mix_command(
        self,
        inputs: list[tuple[str, AudioClipData]],
        duration: float,
        output_name: str,
    ) -> list[str]:
        """
        Build the mix command (arguments after FFmpeg's global options).

        Args:
            inputs: (prepared buffer name, clip) pairs in input order
            duration: Export duration in seconds
            output_name: Output buffer name

        Returns:
            FFmpeg argument list
        """
        args: list[str] = []
        filter_parts: list[str] = []
        chain_outputs: list[str] = []

        for i, (input_name, clip) in enumerate(inputs):
            args.extend(["-i", input_name])

            delay_samples = int(round(clip.start_s * self.sample_rate))
            chain = [
                f"atrim=start=0:end={format_seconds(clip.duration_s)}",
                "asetpts=PTS-STARTPTS",  # Reset timestamps after trim
                f"adelay={delay_samples}S:all=1",
                f"apad=whole_dur={format_seconds(duration)}",
            ]
            chain_output = f"clip{i}"
            filter_parts.append(f"[{i}:a]" + ",".join(chain) + f"[{chain_output}]")
            chain_outputs.append(chain_output)

        if len(chain_outputs) == 1:
            # Single chain - no mixing needed
            final_output = chain_outputs[0]
        else:
            mix_input_str = "".join(f"[{o}]" for o in chain_outputs)
            filter_parts.append(
                f"{mix_input_str}amix=inputs={len(chain_outputs)}:duration=longest:normalize=0[mixed]"
            )
            final_output = "mixed"

        filter_parts.append(f"[{final_output}]atrim=start=0:end={format_seconds(duration)}[out]")
        filter_complex = ";\n".join(filter_parts)

        return [
            *args,
            "-filter_complex", filter_complex,
            "-map", "[out]",
            "-t", format_seconds(duration),  # Limit output to export duration
            *self._encode_args(),
            output_name,
        ]

    async def mix(
        self,
        clips: list[Clip],
        duration: float,
        on_progress: Optional[StageProgress] = None,
        cancel_check: Optional[Callable[[], Any]] = None,
    ) -> Optional[AudioMixResult]:
        """
        Mix the resolved audio clips into one track of ``duration`` seconds.

        Returns:
            AudioMixResult, or None when there is no usable audio

        Raises:
            ResourceExhaustedError: FFmpeg ran out of memory
            EncoderUnresponsiveError: An FFmpeg command timed out
            asyncio.CancelledError: cancel_check reported cancellation
        """
        if not clips:
            logger.info("[AUDIO MIX] No audio clips, skipping")
            return None

        clip_data = [AudioClipData.from_clip(c) for c in clips]
        logger.info(f"[AUDIO MIX] Processing {len(clip_data)} clips, duration={duration:.3f}s")

        buffers: list[str] = []
        prepared: list[tuple[str, AudioClipData]] = []
        dropped: list[str] = []
        self.silent_clip_ids = []
        try:
            for i, clip in enumerate(clip_data):
                await raise_if_cancelled(cancel_check)
                if on_progress:
                    on_progress(PREPARE_SHARE * i / len(clip_data), f"Preparing audio {i + 1}/{len(clip_data)}")
                try:
                    name = await self._prepare(i, clip, buffers)
                except CodecCommandError as e:
                    if clip.from_video and is_missing_stream(e.stderr):
                        # A video without sound is not a failure
                        logger.info(f"[AUDIO MIX] Clip {clip.clip_id} has no audio stream, skipping")
                        self.silent_clip_ids.append(clip.clip_id)
                        continue
                    logger.warning(f"[AUDIO MIX] Dropping clip {clip.clip_id}: {e}")
                    dropped.append(clip.clip_id)
                    continue
                except SourceUnavailableError as e:
                    logger.warning(f"[AUDIO MIX] Dropping clip {clip.clip_id}: {e}")
                    dropped.append(clip.clip_id)
                    continue
                prepared.append((name, clip))

            if not prepared:
                if dropped:
                    logger.warning("[AUDIO MIX] No clip could be prepared, exporting without audio")
                else:
                    logger.info("[AUDIO MIX] No audible clip, exporting without audio")
                return None

            await raise_if_cancelled(cancel_check)
            if on_progress:
                on_progress(PREPARE_SHARE, "Mixing audio")

            output_name = f"mix.{self.settings.audio_container}"
            buffers.append(output_name)
            if self._is_passthrough(prepared, duration):
                logger.info("[AUDIO MIX] Single clip covers the export, encoding without a filter graph")
                args = self.build_passthrough_command(prepared[0][0], duration, output_name)
            else:
                args = self.build_mix_command(prepared, duration, output_name)

            try:
                await self.engine.run(args, media_seconds=duration * len(prepared))
            except CodecCommandError as e:
                logger.warning(f"[AUDIO MIX] Mix failed, exporting without audio: {e}")
                return None

            data = self.engine.read_file(output_name) if self.engine.has_file(output_name) else b""
            if not data:
                logger.warning("[AUDIO MIX] Mix produced no output, exporting without audio")
                return None

            if on_progress:
                on_progress(1.0, "Audio mixed")
            logger.info(
                f"[AUDIO MIX] Mixed {len(prepared)} clips ({len(dropped)} dropped), {len(data)} bytes"
            )
            return AudioMixResult(
                data=data,
                mime_type=self.mime_type,
                clip_count=len(prepared),
                dropped_clip_ids=dropped,
                silent_clip_ids=list(self.silent_clip_ids),
            )
        finally:
            for name in buffers:
                self.engine.delete_file(name)

    @staticmethod
    def _is_passthrough(prepared: list[tuple[str, AudioClipData]], duration: float) -> bool:
        if len(prepared) != 1:
            return False
        clip = prepared[0][1]
        return clip.start_s == 0 and clip.duration_s >= duration

    async def _prepare(self, index: int, clip: AudioClipData, buffers: list[str]) -> str:
        """Write a clip's source to the engine and decode it to PCM WAV."""
        raw = self._load_source(clip)
        suffix = clip.source.suffix if isinstance(clip.source, Path) else ""
        input_name = f"src{index}{suffix}"
        output_name = f"pcm{index}.wav"
        buffers.extend([input_name, output_name])

        self.engine.write_file(input_name, raw)
        if clip.from_video:
            logger.debug(f"[AUDIO MIX] Demuxing audio of clip {clip.clip_id} from its video container")
        await self.engine.run(
            self.build_prepare_command(clip, input_name, output_name),
            media_seconds=clip.duration_s,
        )
        # Source bytes are no longer needed once decoded
        self.engine.delete_file(input_name)

        if self.engine.file_size(output_name) == 0:
            raise CodecCommandError(f"Decoding clip {clip.clip_id} produced no audio")
        return output_name

    @staticmethod
    def _load_source(clip: AudioClipData) -> bytes:
        source = clip.source
        if source is None:
            raise SourceUnavailableError(clip.clip_id, "no raw source")
        if isinstance(source, bytes):
            if not source:
                raise SourceUnavailableError(clip.clip_id, "empty source")
            return source
        try:
            data = Path(source).read_bytes()
        except OSError as e:
            raise SourceUnavailableError(clip.clip_id, str(e)) from e
        if not data:
            raise SourceUnavailableError(clip.clip_id, "empty source")
        return data
