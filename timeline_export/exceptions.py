"""Custom exceptions for the export pipeline.

Every failure the pipeline can report carries a machine-readable code from
``constants.error_codes``. Audio-path failures are absorbed inside the
pipeline; the classes below that reach the caller are the video capture
failures, invalid input and final resource exhaustion.
"""

from typing import Any

from timeline_export.constants.error_codes import get_error_spec


class ExportError(Exception):
    """Base exception for all export pipeline errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return get_error_spec(self.code).get("retryable", False)

    @property
    def outcome_message(self) -> str:
        """User-facing sentence describing this failure."""
        return get_error_spec(self.code).get("outcome_message", self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        spec = get_error_spec(self.code)
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "suggested_fix": self.suggested_fix or spec.get("suggested_fix"),
        }


# =============================================================================
# Input Errors
# =============================================================================


class InvalidInputError(ExportError):
    """Bad duration, frame rate, output size, or empty clip list."""

    code = "INVALID_INPUT"
    message = "Invalid export parameters"

    def __init__(self, message: str | None = None, *, field: str | None = None):
        self.field = field
        super().__init__(message)


class ExportBusyError(ExportError):
    """An export is already running against the same renderer."""

    code = "EXPORT_IN_PROGRESS"
    message = "Another export is already running"


# =============================================================================
# Video Capture Errors (terminal)
# =============================================================================


class NoRenderTargetError(ExportError):
    """The renderer has no visible surface to capture."""

    code = "NO_RENDER_TARGET"
    message = "Renderer has no visible surface"


class EmptyCaptureError(ExportError):
    """The capture sink produced a zero-length stream."""

    code = "EMPTY_CAPTURE"
    message = "Capture produced no output"


class RendererUnresponsiveError(ExportError):
    """The renderer did not signal completion within the frame budget."""

    code = "RENDERER_UNRESPONSIVE"
    message = "Renderer did not respond"

    def __init__(self, timestamp: float | None = None, timeout_s: float | None = None):
        self.timestamp = timestamp
        self.timeout_s = timeout_s
        message = self.message
        if timestamp is not None:
            message = f"Renderer did not settle for t={timestamp:.3f}s within {timeout_s:.1f}s"
        super().__init__(message)


class EncoderUnresponsiveError(ExportError):
    """An encoder command exceeded its time budget."""

    code = "ENCODER_UNRESPONSIVE"
    message = "Encoder did not respond"

    def __init__(self, message: str | None = None, *, timeout_s: float | None = None):
        self.timeout_s = timeout_s
        super().__init__(message)


# =============================================================================
# Resource Errors (retried once with the degraded strategy)
# =============================================================================


class ResourceExhaustedError(ExportError):
    """The codec engine or the capture path ran out of memory."""

    code = "RESOURCE_EXHAUSTED"
    message = "Export ran out of memory"


# =============================================================================
# Internal Errors (absorbed by the audio path)
# =============================================================================


class CodecCommandError(ExportError):
    """FFmpeg exited with a non-zero status for a non-resource reason."""

    code = "CODEC_COMMAND_FAILED"
    message = "Codec command failed"

    def __init__(self, message: str | None = None, *, returncode: int | None = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class SourceUnavailableError(ExportError):
    """A clip's raw source could not be read."""

    code = "SOURCE_UNAVAILABLE"
    message = "Clip source could not be read"

    def __init__(self, clip_id: str | None = None, reason: str | None = None):
        self.clip_id = clip_id
        message = self.message
        if clip_id:
            message = f"Source unavailable for clip {clip_id}"
            if reason:
                message = f"{message}: {reason}"
        super().__init__(message)
