"""FFmpeg-backed capture sink.

Rendered surfaces arrive as Pillow images and are piped as raw frames into
one FFmpeg process that encodes the WebM video stream:

- alpha mode:    RGBA frames -> VP9, yuva420p (transparency preserved)
- no-alpha mode: RGB frames composited onto black -> VP8, yuv420p
"""

import asyncio
import errno
import logging
import os
import shutil
import tempfile
from typing import Optional

from PIL import Image

from timeline_export.codec.engine import raise_for_ffmpeg_failure
from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import CodecCommandError, ResourceExhaustedError

logger = logging.getLogger(__name__)


def prepare_frame(image: Image.Image, width: int, height: int, preserve_alpha: bool) -> Image.Image:
    """Convert a rendered surface into the sink's raw frame layout."""
    frame = image if image.mode == "RGBA" else image.convert("RGBA")
    if frame.size != (width, height):
        frame = frame.resize((width, height), Image.Resampling.BILINEAR)
    if preserve_alpha:
        return frame
    # Composite onto black background (no alpha)
    background = Image.new("RGBA", frame.size, (0, 0, 0, 255))
    return Image.alpha_composite(background, frame).convert("RGB")


class FFmpegCaptureSink:
    """Accumulates rendered frames into an encoded WebM stream."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._work_dir: Optional[str] = None
        self._output_path: Optional[str] = None
        self.width = 0
        self.height = 0
        self.preserve_alpha = True
        self.frames_written = 0

    @property
    def mime_type(self) -> str:
        return self.settings.video_mime_type

    def build_command(self, width: int, height: int, frame_rate: float, preserve_alpha: bool, output_path: str) -> list[str]:
        """Build the FFmpeg encode command without executing it."""
        if preserve_alpha:
            input_pix_fmt = "rgba"
            codec = self.settings.alpha_video_codec
            pix_fmt = self.settings.alpha_pixel_format
        else:
            input_pix_fmt = "rgb24"
            codec = self.settings.opaque_video_codec
            pix_fmt = self.settings.opaque_pixel_format

        return [
            self.settings.ffmpeg_path,
            "-hide_banner",
            "-y",
            "-f", "rawvideo",
            "-pix_fmt", input_pix_fmt,
            "-s", f"{width}x{height}",
            "-r", str(frame_rate),
            "-i", "pipe:0",
            "-an",
            "-c:v", codec,
            "-pix_fmt", pix_fmt,
            "-b:v", self.settings.video_bitrate,
            "-threads", str(self.settings.render_ffmpeg_threads),
            "-f", self.settings.video_container,
            output_path,
        ]

    async def open(self, width: int, height: int, frame_rate: float, preserve_alpha: bool) -> None:
        """Start a new encode, discarding anything from a previous one."""
        await self.abort()

        self.width = width
        self.height = height
        self.preserve_alpha = preserve_alpha
        self.frames_written = 0
        self._work_dir = tempfile.mkdtemp(prefix=f"{self.settings.work_dir_prefix}capture_")
        self._output_path = os.path.join(self._work_dir, f"capture.{self.settings.video_container}")

        cmd = self.build_command(width, height, frame_rate, preserve_alpha, self._output_path)
        logger.info(
            f"[CAPTURE] Opening encoder {width}x{height}@{frame_rate}fps "
            f"alpha={preserve_alpha}: {' '.join(cmd)}"
        )
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._cleanup()
            if e.errno == errno.ENOMEM:
                raise ResourceExhaustedError(f"Could not start encoder: {e}") from e
            raise CodecCommandError(f"Could not start encoder: {e}") from e

        # Drain stderr concurrently so a chatty encoder cannot block on a full pipe
        self._stderr_task = asyncio.create_task(self._proc.stderr.read())

    async def write_frame(self, image: Image.Image) -> None:
        """Append one rendered surface to the stream."""
        if self._proc is None or self._proc.stdin is None:
            raise CodecCommandError("Capture sink is not open")

        frame = prepare_frame(image, self.width, self.height, self.preserve_alpha)
        try:
            self._proc.stdin.write(frame.tobytes())
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            returncode = await self._proc.wait()
            stderr = await self._read_stderr()
            raise_for_ffmpeg_failure(returncode, stderr, "Video encoder stopped accepting frames")
        self.frames_written += 1

    async def close(self) -> bytes:
        """Finish the encode and return the encoded stream."""
        if self._proc is None:
            return b""

        proc = self._proc
        try:
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
                try:
                    await proc.stdin.wait_closed()
                except (BrokenPipeError, ConnectionResetError):
                    pass
            returncode = await proc.wait()
            stderr = await self._read_stderr()
            if returncode != 0:
                raise_for_ffmpeg_failure(returncode, stderr, "Video encode failed")

            if self._output_path and os.path.exists(self._output_path):
                with open(self._output_path, "rb") as f:
                    data = f.read()
            else:
                data = b""
            logger.info(f"[CAPTURE] Encoded {self.frames_written} frames, {len(data)} bytes")
            return data
        finally:
            self._proc = None
            self._cleanup()

    async def abort(self) -> None:
        """Kill a running encode and drop its partial output."""
        proc = self._proc
        self._proc = None
        if proc is not None and proc.returncode is None:
            proc.kill()
            await proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        self._stderr_task = None
        self._cleanup()

    async def _read_stderr(self) -> str:
        if self._stderr_task is None:
            return ""
        raw = await self._stderr_task
        self._stderr_task = None
        return raw.decode("utf-8", errors="replace")

    def _cleanup(self) -> None:
        if self._work_dir:
            shutil.rmtree(self._work_dir, ignore_errors=True)
        self._work_dir = None
        self._output_path = None
