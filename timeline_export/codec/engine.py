"""FFmpeg codec engine operating on named byte buffers.

Buffers live as files in a private work directory and FFmpeg runs with that
directory as its cwd, so commands refer to buffers by bare name
(``["-i", "clip0.wav", ...]``). Failures are classified so that the
orchestrator can tell out-of-memory conditions apart from everything else.
"""

import asyncio
import errno
import json
import logging
import os
import shutil
import tempfile
from typing import Optional

from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import (
    CodecCommandError,
    EncoderUnresponsiveError,
    ResourceExhaustedError,
)

logger = logging.getLogger(__name__)

# stderr fragments FFmpeg / libav* print when an allocation fails
OOM_MARKERS = (
    "cannot allocate memory",
    "out of memory",
    "std::bad_alloc",
    "memory allocation failed",
    "memory access out of bounds",
    "enomem",
)

# Exit statuses of a process killed by the kernel OOM killer (SIGKILL)
OOM_KILL_RETURNCODES = (-9, 137)

# stderr fragments FFmpeg prints when a stream map selects nothing
MISSING_STREAM_MARKERS = (
    "matches no streams",
    "does not contain any stream",
)


def format_seconds(seconds: float) -> str:
    """Format seconds for an FFmpeg argument without float noise (``3.0`` -> ``3``)."""
    text = f"{seconds:.6f}".rstrip("0").rstrip(".")
    return text or "0"


def is_resource_exhaustion(returncode: Optional[int], stderr: str) -> bool:
    """Return True if an FFmpeg failure looks like memory exhaustion."""
    if returncode in OOM_KILL_RETURNCODES:
        return True
    lowered = stderr.lower()
    return any(marker in lowered for marker in OOM_MARKERS)


def is_missing_stream(stderr: str) -> bool:
    """Return True if FFmpeg failed because the input has no matching stream."""
    lowered = stderr.lower()
    return any(marker in lowered for marker in MISSING_STREAM_MARKERS)


def raise_for_ffmpeg_failure(returncode: Optional[int], stderr: str, context: str) -> None:
    """Raise the matching ExportError for a failed FFmpeg process."""
    tail = stderr.strip()[-2000:]
    if is_resource_exhaustion(returncode, stderr):
        raise ResourceExhaustedError(f"{context}: FFmpeg ran out of memory (exit {returncode})")
    raise CodecCommandError(
        f"{context}: FFmpeg exited with {returncode}: {tail}",
        returncode=returncode,
        stderr=stderr,
    )


class FFmpegEngine:
    """Runs FFmpeg commands against buffers stored in a private work directory."""

    def __init__(self, settings: Optional[Settings] = None, work_dir: Optional[str] = None):
        self.settings = settings or get_settings()
        self.ffmpeg_path = self.settings.ffmpeg_path
        self.ffprobe_path = self.settings.ffprobe_path
        self._owns_work_dir = work_dir is None
        self.work_dir = work_dir or tempfile.mkdtemp(prefix=self.settings.work_dir_prefix)
        os.makedirs(self.work_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def _path(self, name: str) -> str:
        if not name or os.path.basename(name) != name:
            raise ValueError(f"Invalid buffer name: {name!r}")
        return os.path.join(self.work_dir, name)

    def write_file(self, name: str, data: bytes) -> None:
        with open(self._path(name), "wb") as f:
            f.write(data)

    def read_file(self, name: str) -> bytes:
        with open(self._path(name), "rb") as f:
            return f.read()

    def has_file(self, name: str) -> bool:
        return os.path.isfile(self._path(name))

    def file_size(self, name: str) -> int:
        path = self._path(name)
        return os.path.getsize(path) if os.path.isfile(path) else 0

    def delete_file(self, name: str) -> None:
        try:
            os.remove(self._path(name))
        except FileNotFoundError:
            pass

    def close(self) -> None:
        """Remove the work directory and every buffer in it."""
        if self._owns_work_dir:
            shutil.rmtree(self.work_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def command_timeout(self, media_seconds: float) -> float:
        """Upper bound for one command processing ``media_seconds`` of media."""
        return (
            self.settings.encoder_timeout_base_s
            + self.settings.encoder_timeout_per_media_s * max(0.0, media_seconds)
        )

    async def run(
        self,
        args: list[str],
        media_seconds: float = 0.0,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Execute one FFmpeg command inside the work directory.

        Args:
            args: FFmpeg arguments after the global options (inputs, filters, output)
            media_seconds: Amount of media the command processes, used for the timeout
            timeout: Explicit timeout in seconds (overrides the computed one)

        Returns:
            FFmpeg stderr output

        Raises:
            ResourceExhaustedError: FFmpeg ran out of memory or was OOM-killed
            EncoderUnresponsiveError: The command exceeded its timeout
            CodecCommandError: Any other failure
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-y",
            "-threads", str(self.settings.render_ffmpeg_threads),
            *args,
        ]
        limit = timeout if timeout is not None else self.command_timeout(media_seconds)
        logger.debug(f"[FFMPEG] {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.work_dir,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            if e.errno == errno.ENOMEM:
                raise ResourceExhaustedError(f"Could not start FFmpeg: {e}") from e
            raise CodecCommandError(f"Could not start FFmpeg: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"[FFMPEG] Command timed out after {limit:.1f}s: {' '.join(cmd)}")
            raise EncoderUnresponsiveError(
                f"FFmpeg did not finish within {limit:.1f}s", timeout_s=limit
            )

        stderr_text = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            logger.error(f"[FFMPEG] Command failed ({proc.returncode}): {stderr_text[-500:]}")
            raise_for_ffmpeg_failure(proc.returncode, stderr_text, "FFmpeg command failed")
        return stderr_text

    async def probe_duration(self, name: str) -> float:
        """Return the container duration of a buffer in seconds (ffprobe)."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            name,
        ]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=self.work_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.settings.encoder_timeout_base_s
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise EncoderUnresponsiveError(f"ffprobe did not finish for {name}")

        if proc.returncode != 0:
            raise CodecCommandError(
                f"ffprobe failed for {name}",
                returncode=proc.returncode,
                stderr=stderr.decode("utf-8", errors="replace"),
            )
        try:
            data = json.loads(stdout.decode("utf-8", errors="replace"))
            return float(data["format"]["duration"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CodecCommandError(f"Duration not found in: {name}") from e
