from timeline_export.render.audio_mixer import AudioMixResult, AudioMixStage
from timeline_export.render.audio_sources import AudioSourceResolver, ResolvedAudio
from timeline_export.render.duration import resolve_export_duration, total_frame_count
from timeline_export.render.frame_capture import (
    DEFAULT_STRATEGIES,
    DEGRADED,
    FULL_FIDELITY,
    CaptureResult,
    CaptureStrategy,
    FrameCaptureStage,
)
from timeline_export.render.pipeline import (
    ExportOrchestrator,
    ExportProgress,
    ExportResult,
    ExportState,
)
from timeline_export.render.stream_combiner import CombineResult, StreamCombiner

__all__ = [
    "AudioMixResult",
    "AudioMixStage",
    "AudioSourceResolver",
    "ResolvedAudio",
    "resolve_export_duration",
    "total_frame_count",
    "DEFAULT_STRATEGIES",
    "DEGRADED",
    "FULL_FIDELITY",
    "CaptureResult",
    "CaptureStrategy",
    "FrameCaptureStage",
    "ExportOrchestrator",
    "ExportProgress",
    "ExportResult",
    "ExportState",
    "CombineResult",
    "StreamCombiner",
]
