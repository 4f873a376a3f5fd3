"""
Pytest fixtures for timeline-export tests.

Most tests run against in-memory fakes of the three collaborators:
- FakeRenderer: records seeks / render cycles, returns a solid RGBA surface
- FakeSink: records frames, returns fixed bytes from close()
- FakeEngine: records FFmpeg argument lists and fabricates their outputs

CI/CD Note:
Tests that need a real FFmpeg binary are marked with @pytest.mark.requires_ffmpeg
and skipped automatically when ffmpeg/ffprobe are not on PATH.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import pytest
from PIL import Image

from timeline_export.config import Settings
from timeline_export.exceptions import CodecCommandError


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg and ffprobe on PATH"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


# Skip decorator for tests requiring a real FFmpeg
requires_ffmpeg = pytest.mark.skipif(
    not _ffmpeg_available(),
    reason="ffmpeg/ffprobe not available"
)


# ============================================================================
# Fakes
# ============================================================================


class FakeRenderer:
    """Renderer double. ``hang_at`` makes the seek for that frame index never resolve."""

    def __init__(
        self,
        size: tuple[int, int] = (16, 9),
        surface: bool = True,
        hang_at: Optional[int] = None,
        color: tuple[int, int, int, int] = (255, 0, 0, 128),
    ):
        self.size = size
        self.surface = surface
        self.hang_at = hang_at
        self.color = color
        self.seeks: list[float] = []
        self.cycles = 0

    def has_surface(self) -> bool:
        return self.surface

    async def seek(self, timestamp: float) -> None:
        self.seeks.append(timestamp)
        if self.hang_at is not None and len(self.seeks) - 1 == self.hang_at:
            await asyncio.sleep(3600)

    async def wait_render_cycle(self) -> None:
        self.cycles += 1

    def snapshot(self) -> Optional[Image.Image]:
        return Image.new("RGBA", self.size, self.color)


class FakeSink:
    """Capture sink double. ``fail_alpha`` / ``fail_opaque`` raise from write_frame."""

    mime_type = "video/webm"

    def __init__(
        self,
        output: bytes = b"VIDEO",
        fail_alpha: Optional[BaseException] = None,
        fail_opaque: Optional[BaseException] = None,
    ):
        self.output = output
        self.fail_alpha = fail_alpha
        self.fail_opaque = fail_opaque
        self.opened: list[tuple[int, int, float, bool]] = []
        self.frames: list[Image.Image] = []
        self.preserve_alpha = True
        self.closed = 0
        self.aborted = 0

    async def open(self, width: int, height: int, frame_rate: float, preserve_alpha: bool) -> None:
        self.opened.append((width, height, frame_rate, preserve_alpha))
        self.preserve_alpha = preserve_alpha
        self.frames = []

    async def write_frame(self, image: Image.Image) -> None:
        failure = self.fail_alpha if self.preserve_alpha else self.fail_opaque
        if failure is not None:
            raise failure
        self.frames.append(image)

    async def close(self) -> bytes:
        self.closed += 1
        return self.output

    async def abort(self) -> None:
        self.aborted += 1


class FakeEngine:
    """
    Codec engine double keeping buffers in a dict.

    Commands are classified as ``prepare`` (PCM decode), ``mux`` (stream copy)
    or ``mix`` (graph or passthrough encode). ``fail`` maps a kind to the
    exception its command raises. A source whose bytes start with ``BAD``
    fails to decode with CodecCommandError; one starting with ``MUTE`` has
    no audio stream. ``probe_duration`` reports the ``-t`` of the command
    that wrote a buffer, or raises ``fail["duration"]``.
    """

    def __init__(self, settings: Optional[Settings] = None, fail: Optional[dict] = None):
        self.settings = settings
        self.fail = dict(fail or {})
        self.files: dict[str, bytes] = {}
        self.durations: dict[str, float] = {}
        self.commands: list[list[str]] = []
        self.duration_queries: list[str] = []
        self.deleted: list[str] = []
        self.closed = False

    @staticmethod
    def classify(args: list[str]) -> str:
        if "pcm_s16le" in args:
            return "prepare"
        if "-shortest" in args:
            return "mux"
        return "mix"

    def commands_of(self, kind: str) -> list[list[str]]:
        return [c for c in self.commands if self.classify(c) == kind]

    def write_file(self, name: str, data: bytes) -> None:
        self.files[name] = data

    def read_file(self, name: str) -> bytes:
        return self.files[name]

    def has_file(self, name: str) -> bool:
        return name in self.files

    def file_size(self, name: str) -> int:
        return len(self.files.get(name, b""))

    def delete_file(self, name: str) -> None:
        self.files.pop(name, None)
        self.deleted.append(name)

    def close(self) -> None:
        self.closed = True

    def command_timeout(self, media_seconds: float) -> float:
        return 60.0

    async def run(self, args: list[str], media_seconds: float = 0.0, timeout: Optional[float] = None) -> str:
        self.commands.append(list(args))
        kind = self.classify(args)
        if kind in self.fail:
            raise self.fail[kind]

        inputs = [args[i + 1] for i, a in enumerate(args) if a == "-i"]
        output = args[-1]
        if kind == "prepare":
            source = self.files[inputs[0]]
            if source.startswith(b"BAD"):
                raise CodecCommandError("Invalid data found when processing input", returncode=1)
            if source.startswith(b"MUTE"):
                raise CodecCommandError(
                    "FFmpeg command failed: FFmpeg exited with 1",
                    returncode=1,
                    stderr="Stream map '0:a:0' matches no streams.\n"
                    "To ignore this, add a trailing '?' to the map.",
                )
            self.files[output] = b"PCM:" + source
        elif kind == "mux":
            self.files[output] = b"MUXED:" + self.files[inputs[0]] + b"+" + self.files[inputs[1]]
        else:
            self.files[output] = b"OPUS:" + b"|".join(self.files[i] for i in inputs)
        if "-t" in args:
            self.durations[output] = float(args[args.index("-t") + 1])
        return ""

    async def probe_duration(self, name: str) -> float:
        self.duration_queries.append(name)
        if "duration" in self.fail:
            raise self.fail["duration"]
        if name not in self.durations:
            raise CodecCommandError(f"Duration not found in: {name}")
        return self.durations[name]


class FakeClock:
    """Manual clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with short timeouts and a generous memory budget."""
    return Settings(
        _env_file=None,
        renderer_timeout_min_s=0.05,
        renderer_timeout_frame_multiple=0.0,
        encoder_timeout_base_s=1.0,
        encoder_timeout_per_media_s=0.0,
        capture_fixed_delay_ms=0,
        render_max_memory_bytes=64 * 1024 ** 3,
    )


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def engine(settings) -> FakeEngine:
    return FakeEngine(settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="timeline_export_test_") as tmpdir:
        yield Path(tmpdir)
