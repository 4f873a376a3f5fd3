"""Invocation surface for composition exports.

``export_composition`` is the entry point the editor calls. It validates the
clip snapshot, refuses a second export against a renderer that is already
being captured, and runs the orchestrator with the default strategies.
"""

import logging
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError

from timeline_export.codec.engine import FFmpegEngine
from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import ExportBusyError, InvalidInputError
from timeline_export.render.frame_capture import DEFAULT_STRATEGIES, DEGRADED, CaptureStrategy
from timeline_export.render.pipeline import ExportOrchestrator, ExportResult, ProgressCallback, report_rejection
from timeline_export.schemas.clip import Clip
from timeline_export.schemas.export import ExportRequest

logger = logging.getLogger(__name__)

# Renderers currently being captured (by identity); one export per renderer
_active_renderers: set[int] = set()


def build_request(
    clips: Sequence[Clip | dict[str, Any]],
    nominal_duration: float,
    width: int,
    height: int,
    frame_rate: float,
    renderer: Any,
    capture_sink: Any | None = None,
    audio_links: Optional[dict[str, str]] = None,
) -> ExportRequest:
    """Validate export parameters into an ExportRequest.

    Raises:
        InvalidInputError: Any field failed validation
    """
    try:
        return ExportRequest(
            clips=list(clips),
            nominal_duration=nominal_duration,
            width=width,
            height=height,
            frame_rate=frame_rate,
            renderer=renderer,
            capture_sink=capture_sink,
            audio_links=audio_links or {},
        )
    except ValidationError as e:
        errors = e.errors()
        field = ".".join(str(p) for p in errors[0]["loc"]) if errors else None
        raise InvalidInputError(f"Invalid export parameters: {e}", field=field) from e


async def _run(
    request_fields: dict[str, Any],
    strategies: Sequence[CaptureStrategy],
    on_progress: Optional[ProgressCallback],
    cancel_check: Optional[Callable[[], Any]],
    settings: Optional[Settings],
    engine: Optional[FFmpegEngine],
) -> ExportResult:
    try:
        request = build_request(**request_fields)
    except InvalidInputError as e:
        report_rejection(on_progress, e)
        raise

    key = id(request.renderer)
    if key in _active_renderers:
        error = ExportBusyError()
        report_rejection(on_progress, error)
        raise error

    _active_renderers.add(key)
    try:
        orchestrator = ExportOrchestrator(
            engine=engine,
            settings=settings or get_settings(),
            strategies=strategies,
        )
        return await orchestrator.export(request, on_progress=on_progress, cancel_check=cancel_check)
    finally:
        _active_renderers.discard(key)


async def export_composition(
    clips: Sequence[Clip | dict[str, Any]],
    nominal_duration: float,
    width: int,
    height: int,
    frame_rate: float,
    renderer: Any,
    on_progress: Optional[ProgressCallback] = None,
    *,
    capture_sink: Any | None = None,
    audio_links: Optional[dict[str, str]] = None,
    cancel_check: Optional[Callable[[], Any]] = None,
    settings: Optional[Settings] = None,
    engine: Optional[FFmpegEngine] = None,
) -> ExportResult:
    """
    Export the composition to one muxed WebM artifact.

    Args:
        clips: Flat clip snapshot (Clip models or editor dicts, camelCase accepted)
        nominal_duration: Timeline duration shown in the editor (seconds)
        width: Output width in pixels
        height: Output height in pixels
        frame_rate: Output frame rate
        renderer: FrameRenderer capability handle
        on_progress: Callback receiving (percent, message)
        capture_sink: CaptureSink to encode frames into (FFmpeg by default)
        audio_links: Explicit video_id -> audio_id link table
        cancel_check: Sync or async callable returning True to cancel
        settings: Settings override
        engine: Codec engine override (caller keeps ownership)

    Returns:
        ExportResult

    Raises:
        InvalidInputError: Parameters failed validation (reported through on_progress)
        ExportBusyError: The renderer is already being exported
    """
    request_fields = dict(
        clips=clips, nominal_duration=nominal_duration, width=width, height=height,
        frame_rate=frame_rate, renderer=renderer, capture_sink=capture_sink, audio_links=audio_links,
    )
    return await _run(request_fields, DEFAULT_STRATEGIES, on_progress, cancel_check, settings, engine)


async def export_composition_fallback(
    clips: Sequence[Clip | dict[str, Any]],
    nominal_duration: float,
    width: int,
    height: int,
    frame_rate: float,
    renderer: Any,
    on_progress: Optional[ProgressCallback] = None,
    *,
    capture_sink: Any | None = None,
    audio_links: Optional[dict[str, str]] = None,
    cancel_check: Optional[Callable[[], Any]] = None,
    settings: Optional[Settings] = None,
    engine: Optional[FFmpegEngine] = None,
) -> ExportResult:
    """Run the same pipeline with only the degraded (low-memory) strategy."""
    logger.info("[EXPORT] Running low-memory export")
    request_fields = dict(
        clips=clips, nominal_duration=nominal_duration, width=width, height=height,
        frame_rate=frame_rate, renderer=renderer, capture_sink=capture_sink, audio_links=audio_links,
    )
    return await _run(request_fields, (DEGRADED,), on_progress, cancel_check, settings, engine)
