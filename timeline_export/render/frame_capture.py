"""Frame-by-frame capture of the external renderer.

The stage pulls frames: it asks the renderer to present timestamp ``t`` and
waits for the renderer to signal that the frame has settled (one completion
per seek, then ``capture_settle_cycles`` render cycles so a stale frame is
never read). The settled surface is pushed into the capture sink.

Two pacing modes exist:
- ScheduledPacer: frame i is dispatched at ``start + i * 1000/fps`` ms of
  wall-clock time, so a slow cycle never accumulates drift
- FixedDelayPacer: a fixed minimal delay between frames (degraded strategy)
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from PIL import Image

from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import (
    EmptyCaptureError,
    EncoderUnresponsiveError,
    NoRenderTargetError,
    RendererUnresponsiveError,
    ResourceExhaustedError,
)
from timeline_export.render.duration import total_frame_count
from timeline_export.utils.cancellation import raise_if_cancelled

logger = logging.getLogger(__name__)

StageProgress = Callable[[float, str], None]


# ============================================================================
# Collaborator protocols
# ============================================================================


@runtime_checkable
class FrameRenderer(Protocol):
    """Live visual renderer driven by the capture stage."""

    def has_surface(self) -> bool: ...

    async def seek(self, timestamp: float) -> None:
        """Present the composited frame for ``timestamp``; resolves once."""
        ...

    async def wait_render_cycle(self) -> None:
        """Resolve after the renderer completes its next render cycle."""
        ...

    def snapshot(self) -> Optional[Image.Image]: ...


@runtime_checkable
class CaptureSink(Protocol):
    """Accumulates rendered surfaces into an encoded video stream."""

    mime_type: str

    async def open(self, width: int, height: int, frame_rate: float, preserve_alpha: bool) -> None: ...

    async def write_frame(self, image: Image.Image) -> None: ...

    async def close(self) -> bytes: ...

    async def abort(self) -> None: ...


# ============================================================================
# Pacing
# ============================================================================


class FramePacer(ABC):
    """Decides when each frame may be dispatched."""

    def start(self) -> None:
        pass

    @abstractmethod
    async def wait_for_slot(self, frame_index: int) -> None:
        """Suspend until frame ``frame_index`` may be captured."""


class ScheduledPacer(FramePacer):
    """Dispatch frame i at ``i * interval`` after the stage started."""

    def __init__(
        self,
        frame_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.interval_s = 1.0 / frame_rate
        self._clock = clock
        self._sleep = sleep
        self._start: Optional[float] = None

    def start(self) -> None:
        self._start = self._clock()

    def slot_time(self, frame_index: int) -> float:
        if self._start is None:
            self.start()
        return self._start + frame_index * self.interval_s

    async def wait_for_slot(self, frame_index: int) -> None:
        delay = self.slot_time(frame_index) - self._clock()
        if delay > 0:
            await self._sleep(delay)


class FixedDelayPacer(FramePacer):
    """Wait a fixed delay between consecutive frames."""

    def __init__(self, delay_s: float, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.delay_s = delay_s
        self._sleep = sleep

    async def wait_for_slot(self, frame_index: int) -> None:
        if frame_index > 0:
            await self._sleep(self.delay_s)


# ============================================================================
# Strategies
# ============================================================================


@dataclass(frozen=True)
class CaptureStrategy:
    """Capture/encode configuration tried by the orchestrator, in order."""

    name: str
    label: str
    preserve_alpha: bool
    scheduled_pacing: bool
    # Share of overall progress per stage (sums to 100)
    capture_weight: int
    mix_weight: int
    combine_weight: int
    outcome_note: Optional[str] = None

    def make_pacer(
        self,
        frame_rate: float,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> FramePacer:
        if self.scheduled_pacing:
            return ScheduledPacer(frame_rate, clock=clock, sleep=sleep)
        return FixedDelayPacer(settings.capture_fixed_delay_ms / 1000, sleep=sleep)


FULL_FIDELITY = CaptureStrategy(
    name="full_fidelity",
    label="full quality",
    preserve_alpha=True,
    scheduled_pacing=True,
    capture_weight=60,
    mix_weight=30,
    combine_weight=10,
)

DEGRADED = CaptureStrategy(
    name="degraded",
    label="low-memory mode",
    preserve_alpha=False,
    scheduled_pacing=False,
    capture_weight=55,
    mix_weight=33,
    combine_weight=12,
    outcome_note="no alpha channel",
)

DEFAULT_STRATEGIES: tuple[CaptureStrategy, ...] = (FULL_FIDELITY, DEGRADED)


# ============================================================================
# Stage
# ============================================================================


@dataclass
class CaptureResult:
    """Encoded video stream produced by the capture stage."""

    data: bytes
    mime_type: str
    frame_count: int
    preserve_alpha: bool


class FrameCaptureStage:
    """Drives the renderer through the timeline and encodes every frame."""

    def __init__(
        self,
        renderer: FrameRenderer,
        sink: CaptureSink,
        strategy: CaptureStrategy = FULL_FIDELITY,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.renderer = renderer
        self.sink = sink
        self.strategy = strategy
        self.settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

    def frame_timeout(self, frame_rate: float) -> float:
        """Upper bound for one renderer wait or one sink write."""
        return max(
            self.settings.renderer_timeout_min_s,
            self.settings.renderer_timeout_frame_multiple / frame_rate,
        )

    async def capture(
        self,
        duration: float,
        frame_rate: float,
        width: int,
        height: int,
        on_progress: Optional[StageProgress] = None,
        cancel_check: Optional[Callable[[], Any]] = None,
    ) -> CaptureResult:
        """
        Capture ``ceil(duration * frame_rate)`` frames into one encoded stream.

        Raises:
            NoRenderTargetError: Renderer has no visible surface
            RendererUnresponsiveError: A seek or render cycle did not complete in time
            EncoderUnresponsiveError: The sink did not open, accept a frame or finish in time
            EmptyCaptureError: The sink produced no output
            ResourceExhaustedError: Memory ran out while capturing
            asyncio.CancelledError: cancel_check reported cancellation
        """
        # Fail fast before opening the encoder or consuming any pacing time
        if not self.renderer.has_surface():
            raise NoRenderTargetError()

        total_frames = total_frame_count(duration, frame_rate)
        timeout = self.frame_timeout(frame_rate)
        cycles = max(1, self.settings.capture_settle_cycles)
        pacer = self.strategy.make_pacer(frame_rate, self.settings, clock=self._clock, sleep=self._sleep)
        preserve_alpha = self.strategy.preserve_alpha

        logger.info(
            f"[CAPTURE] {total_frames} frames, duration={duration:.3f}s @ {frame_rate}fps, "
            f"{width}x{height}, strategy={self.strategy.name}"
        )

        open_timeout = self.settings.encoder_timeout_base_s
        try:
            await asyncio.wait_for(
                self.sink.open(width, height, frame_rate, preserve_alpha), timeout=open_timeout
            )
        except asyncio.TimeoutError:
            await self.sink.abort()
            raise EncoderUnresponsiveError(
                f"Capture sink did not open within {open_timeout:.1f}s", timeout_s=open_timeout
            )
        completed = False
        last_reported_pct = -1
        try:
            pacer.start()
            for frame_index in range(total_frames):
                await raise_if_cancelled(cancel_check)
                await pacer.wait_for_slot(frame_index)

                timestamp = frame_index / frame_rate
                await self._await_renderer(self.renderer.seek(timestamp), timestamp, timeout)
                for _ in range(cycles):
                    await self._await_renderer(self.renderer.wait_render_cycle(), timestamp, timeout)

                surface = self.renderer.snapshot()
                if surface is None:
                    raise NoRenderTargetError(f"Renderer lost its surface at t={timestamp:.3f}s")

                try:
                    await asyncio.wait_for(self.sink.write_frame(surface), timeout=timeout)
                except asyncio.TimeoutError:
                    raise EncoderUnresponsiveError(
                        f"Capture sink did not accept frame {frame_index} within {timeout:.1f}s",
                        timeout_s=timeout,
                    )

                pct = int((frame_index + 1) * 100 / total_frames)
                if on_progress and (pct >= last_reported_pct + 5 or frame_index + 1 == total_frames):
                    last_reported_pct = pct
                    on_progress(
                        (frame_index + 1) / total_frames,
                        f"Recording frame {frame_index + 1}/{total_frames}",
                    )

            close_timeout = self.settings.encoder_timeout_base_s + self.settings.encoder_timeout_per_media_s * duration
            try:
                data = await asyncio.wait_for(self.sink.close(), timeout=close_timeout)
            except asyncio.TimeoutError:
                raise EncoderUnresponsiveError(
                    f"Capture sink did not finish within {close_timeout:.1f}s", timeout_s=close_timeout
                )
            completed = True
        except MemoryError as e:
            raise ResourceExhaustedError(f"Out of memory while capturing frames: {e}") from e
        finally:
            if not completed:
                await self.sink.abort()

        if not data:
            raise EmptyCaptureError()

        return CaptureResult(
            data=data,
            mime_type=self.sink.mime_type,
            frame_count=total_frames,
            preserve_alpha=preserve_alpha,
        )

    async def _await_renderer(self, signal: Awaitable[Any], timestamp: float, timeout: float) -> None:
        try:
            await asyncio.wait_for(signal, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"[CAPTURE] Renderer unresponsive at t={timestamp:.3f}s")
            raise RendererUnresponsiveError(timestamp, timeout)
