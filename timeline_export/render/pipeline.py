"""
Composition export pipeline.

This module orchestrates one export:
1. Resolve audio sources and the true export duration
2. Capture the renderer frame by frame into a video stream
3. Mix every audio clip into one track
4. Mux video and audio without re-encoding

Memory-safe exporting:
- Pre-export memory estimation skips strategies that would not fit
- Resource exhaustion in any stage re-runs the whole pipeline with the next
  (cheaper) capture strategy
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from pydantic import ValidationError

from timeline_export.codec.capture_sink import FFmpegCaptureSink
from timeline_export.codec.engine import FFmpegEngine
from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import (
    ExportBusyError,
    ExportError,
    InvalidInputError,
    ResourceExhaustedError,
)
from timeline_export.render.audio_mixer import AudioMixStage
from timeline_export.render.audio_sources import AudioSourceResolver, ResolvedAudio
from timeline_export.render.duration import resolve_export_duration
from timeline_export.render.frame_capture import (
    DEFAULT_STRATEGIES,
    CaptureStrategy,
    FrameCaptureStage,
)
from timeline_export.render.stream_combiner import StreamCombiner
from timeline_export.schemas.export import ExportRequest
from timeline_export.utils.cancellation import CancellationToken, any_cancelled, raise_if_cancelled
from timeline_export.utils.memory import estimate_export_memory, memory_safety_limit

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

FALLBACK_PREFIX = "Fallback: "


# ============================================================================
# Enums
# ============================================================================


class ExportState(Enum):
    """Export job state."""

    IDLE = "idle"
    RESOLVING_DURATION = "resolving_duration"
    CAPTURING_VIDEO = "capturing_video"
    MIXING_AUDIO = "mixing_audio"
    COMBINING = "combining"
    DONE = "done"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {ExportState.DONE, ExportState.DEGRADED, ExportState.FAILED, ExportState.CANCELLED}
)


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class ExportProgress:
    """Progress information for an export."""

    state: ExportState
    percent: int = 0
    message: Optional[str] = None
    strategy: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "state": self.state.value,
            "percent": self.percent,
            "message": self.message,
            "strategy": self.strategy,
            "finished": self.state in TERMINAL_STATES,
        }


@dataclass
class ExportResult:
    """Final artifact of a successful export."""

    artifact: bytes
    mime_type: str
    duration_used: float
    strategy: str
    degraded: bool = False
    degraded_reasons: list[str] = field(default_factory=list)
    has_audio: bool = False
    frame_count: int = 0
    dropped_audio_clips: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (artifact bytes are summarized by size)."""
        return {
            "artifact_size": len(self.artifact),
            "mime_type": self.mime_type,
            "duration_used": self.duration_used,
            "strategy": self.strategy,
            "degraded": self.degraded,
            "degraded_reasons": list(self.degraded_reasons),
            "has_audio": self.has_audio,
            "frame_count": self.frame_count,
            "dropped_audio_clips": list(self.dropped_audio_clips),
        }


class _ProgressMapper:
    """Maps stage-local progress (0.0-1.0) into the strategy's weights."""

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        strategy: CaptureStrategy,
        on_update: Callable[[int, str], None],
        prefix: str = "",
    ):
        self.callback = callback
        self.prefix = prefix
        self._on_update = on_update
        self._ranges = {
            "capture": (0, strategy.capture_weight),
            "mix": (strategy.capture_weight, strategy.mix_weight),
            "combine": (strategy.capture_weight + strategy.mix_weight, strategy.combine_weight),
        }
        self.percent = 0

    def stage(self, name: str) -> Callable[[float, str], None]:
        offset, weight = self._ranges[name]

        def report(fraction: float, message: str) -> None:
            fraction = min(max(fraction, 0.0), 1.0)
            # Never move backwards within one attempt
            self.percent = max(self.percent, int(offset + weight * fraction))
            self.emit(self.percent, message)

        return report

    def emit(self, percent: int, message: str) -> None:
        text = f"{self.prefix}{message}"
        self._on_update(percent, text)
        if self.callback:
            self.callback(percent, text)


def report_rejection(on_progress: Optional[ProgressCallback], error: ExportError) -> None:
    """Deliver the outcome of an export refused before it started."""
    logger.warning(f"[EXPORT] Rejected ({error.code}): {error.message}")
    if on_progress:
        on_progress(0, error.outcome_message)


# ============================================================================
# Orchestrator
# ============================================================================


class ExportOrchestrator:
    """
    Runs the export pipeline over an ordered list of capture strategies.

    One orchestrator runs at most one export at a time. ``state``,
    ``failure_code`` and ``degraded_reasons`` describe the latest export.
    ``cancel()`` sets the running export's ``cancel_token``, which every
    stage checks alongside the caller's ``cancel_check``.
    """

    def __init__(
        self,
        engine: Optional[FFmpegEngine] = None,
        settings: Optional[Settings] = None,
        strategies: Sequence[CaptureStrategy] = DEFAULT_STRATEGIES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not strategies:
            raise ValueError("At least one capture strategy is required")
        self.settings = settings or get_settings()
        # An injected engine is owned by the caller and reused across attempts
        self.engine = engine
        self.strategies = list(strategies)
        self._clock = clock
        self._sleep = sleep

        self.state = ExportState.IDLE
        self.failure_code: Optional[str] = None
        self.degraded_reasons: list[str] = []
        self.progress = ExportProgress(state=ExportState.IDLE)
        self.cancel_token = CancellationToken()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        """Request cancellation of the running export."""
        if self._running:
            logger.info("[EXPORT] Cancellation requested")
        self.cancel_token.cancel()

    def _set_state(self, state: ExportState) -> None:
        self.state = state
        self.progress.state = state
        logger.debug(f"[EXPORT] state -> {state.value}")

    def _update_progress(self, percent: int, message: str) -> None:
        self.progress.percent = percent
        self.progress.message = message

    async def export(
        self,
        request: ExportRequest | dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
        cancel_check: Optional[Callable[[], Any]] = None,
    ) -> ExportResult:
        """
        Export a composition to one muxed WebM artifact.

        Args:
            request: Export request (or its fields as a dict)
            on_progress: Callback receiving (percent, message)
            cancel_check: Sync or async callable returning True to cancel

        Returns:
            ExportResult

        Raises:
            InvalidInputError: The request failed validation
            ExportBusyError: This orchestrator is already exporting
            ResourceExhaustedError: Every strategy ran out of memory
            ExportError: Any other terminal failure (renderer, encoder, empty capture)
            asyncio.CancelledError: The export was cancelled
        """
        if self._running:
            error = ExportBusyError()
            report_rejection(on_progress, error)
            raise error

        if not isinstance(request, ExportRequest):
            try:
                request = ExportRequest.model_validate(request)
            except ValidationError as e:
                errors = e.errors()
                field_name = ".".join(str(p) for p in errors[0]["loc"]) if errors else None
                error = InvalidInputError(f"Invalid export parameters: {e}", field=field_name)
                report_rejection(on_progress, error)
                raise error from e

        self._running = True
        self.failure_code = None
        self.degraded_reasons = []
        self.progress = ExportProgress(state=ExportState.IDLE)
        self.cancel_token = CancellationToken()
        self._set_state(ExportState.IDLE)
        try:
            return await self._export(request, on_progress, any_cancelled(self.cancel_token, cancel_check))
        finally:
            self._running = False

    async def _export(
        self,
        request: ExportRequest,
        on_progress: Optional[ProgressCallback],
        cancel_check: Optional[Callable[[], Any]],
    ) -> ExportResult:
        start = time.monotonic()
        mapper: Optional[_ProgressMapper] = None

        def report_final(message: str) -> None:
            percent = mapper.percent if mapper else self.progress.percent
            self._update_progress(percent, message)
            if on_progress:
                on_progress(percent, message)

        try:
            self._set_state(ExportState.RESOLVING_DURATION)
            resolved = AudioSourceResolver(request.audio_links).resolve(request.clips)
            duration = resolve_export_duration(
                [*request.visual_clips, *resolved.audio_clips], request.nominal_duration
            )
            if abs(duration - request.nominal_duration) > 1e-9:
                logger.info(
                    f"[EXPORT] Duration {request.nominal_duration:.3f}s -> {duration:.3f}s "
                    f"(trimmed {request.nominal_duration - duration:+.3f}s of trailing time)"
                )

            strategies = self._select_strategies(request, duration, len(resolved.audio_clips))
            last_error: Optional[ResourceExhaustedError] = None

            for attempt, strategy in enumerate(strategies):
                await raise_if_cancelled(cancel_check)
                self.progress.strategy = strategy.name
                mapper = _ProgressMapper(
                    on_progress,
                    strategy,
                    on_update=self._update_progress,
                    prefix=FALLBACK_PREFIX if attempt > 0 else "",
                )
                if attempt > 0:
                    mapper.emit(0, f"Retrying in {strategy.label}")

                logger.info(f"[EXPORT] Attempt {attempt + 1}/{len(strategies)}: strategy={strategy.name}")
                try:
                    result = await self._run_strategy(request, strategy, resolved, duration, mapper, cancel_check)
                except ResourceExhaustedError as e:
                    logger.warning(f"[EXPORT] Strategy {strategy.name} ran out of memory: {e}")
                    last_error = e
                    continue
                except MemoryError as e:
                    logger.warning(f"[EXPORT] Strategy {strategy.name} raised MemoryError: {e}")
                    last_error = ResourceExhaustedError(f"Out of memory: {e}")
                    continue

                self.degraded_reasons = list(result.degraded_reasons)
                self._set_state(ExportState.DEGRADED if result.degraded else ExportState.DONE)
                mapper.percent = 100
                elapsed = time.monotonic() - start
                if result.degraded:
                    logger.warning(
                        f"[EXPORT] Completed with degradation in {elapsed:.1f}s: {'; '.join(result.degraded_reasons)}"
                    )
                    report_final(f"Export complete with limitations: {'; '.join(result.degraded_reasons)}")
                else:
                    logger.info(f"[EXPORT] Completed in {elapsed:.1f}s ({len(result.artifact)} bytes)")
                    report_final("Export complete")
                return result

            assert last_error is not None
            raise last_error

        except asyncio.CancelledError:
            logger.info("[EXPORT] Cancelled, partial output discarded")
            self._set_state(ExportState.CANCELLED)
            report_final("Export cancelled")
            raise
        except ExportError as e:
            logger.error(f"[EXPORT] Failed ({e.code}): {e.message}")
            self.failure_code = e.code
            self._set_state(ExportState.FAILED)
            report_final(e.outcome_message)
            raise
        except Exception:
            logger.exception("[EXPORT] Unexpected failure")
            self.failure_code = ExportError.code
            self._set_state(ExportState.FAILED)
            report_final(ExportError().outcome_message)
            raise

    def _select_strategies(
        self,
        request: ExportRequest,
        duration: float,
        audio_clip_count: int,
    ) -> list[CaptureStrategy]:
        """Drop strategies whose memory estimate exceeds the safety limit (never the last)."""
        limit = memory_safety_limit(self.settings)
        selected: list[CaptureStrategy] = []
        for i, strategy in enumerate(self.strategies):
            is_last = i == len(self.strategies) - 1
            estimate = estimate_export_memory(
                duration_s=duration,
                width=request.width,
                height=request.height,
                audio_clip_count=audio_clip_count,
                preserve_alpha=strategy.preserve_alpha,
                settings=self.settings,
            )
            if estimate > limit and not is_last:
                logger.warning(
                    f"[EXPORT] Skipping strategy {strategy.name}: estimate "
                    f"{estimate / 1024 ** 2:.0f} MB exceeds limit {limit / 1024 ** 2:.0f} MB"
                )
                continue
            selected.append(strategy)
        return selected

    async def _run_strategy(
        self,
        request: ExportRequest,
        strategy: CaptureStrategy,
        resolved: ResolvedAudio,
        duration: float,
        mapper: _ProgressMapper,
        cancel_check: Optional[Callable[[], Any]],
    ) -> ExportResult:
        """Run capture, mix and combine once with ``strategy``."""
        owns_engine = self.engine is None
        engine = self.engine or FFmpegEngine(self.settings)
        sink = request.capture_sink or FFmpegCaptureSink(self.settings)
        try:
            self._set_state(ExportState.CAPTURING_VIDEO)
            capture = await FrameCaptureStage(
                request.renderer,
                sink,
                strategy=strategy,
                settings=self.settings,
                clock=self._clock,
                sleep=self._sleep,
            ).capture(
                duration,
                request.frame_rate,
                request.width,
                request.height,
                on_progress=mapper.stage("capture"),
                cancel_check=cancel_check,
            )
            await raise_if_cancelled(cancel_check)

            self._set_state(ExportState.MIXING_AUDIO)
            mixer = AudioMixStage(engine, self.settings)
            audio = await mixer.mix(
                resolved.audio_clips,
                duration,
                on_progress=mapper.stage("mix"),
                cancel_check=cancel_check,
            )
            await raise_if_cancelled(cancel_check)

            self._set_state(ExportState.COMBINING)
            combined = await StreamCombiner(engine, self.settings).combine(
                capture, audio, duration, on_progress=mapper.stage("combine")
            )
        finally:
            if owns_engine:
                engine.close()

        reasons: list[str] = []
        if strategy.outcome_note:
            reasons.append(f"Exported in {strategy.label} ({strategy.outcome_note})")
        # Videos without an audio stream are silent, not failed
        audible = [c.id for c in resolved.audio_clips if c.id not in mixer.silent_clip_ids]
        dropped = audio.dropped_clip_ids if audio else audible
        if audible and audio is None:
            reasons.append("Audio could not be mixed; exported without audio")
        elif dropped:
            reasons.append(f"Skipped {len(dropped)} unreadable audio clip(s): {', '.join(dropped)}")
        if combined.fallback_reason:
            reasons.append(combined.fallback_reason)

        return ExportResult(
            artifact=combined.data,
            mime_type=combined.mime_type,
            duration_used=duration,
            strategy=strategy.name,
            degraded=bool(reasons),
            degraded_reasons=reasons,
            has_audio=combined.has_audio,
            frame_count=capture.frame_count,
            dropped_audio_clips=list(dropped),
        )
