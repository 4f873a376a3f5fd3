"""Error codes dictionary for export failures.

This is the single source of truth for all export error codes, their
retryability, the outcome message shown to the user, and a suggested fix.
Used by the exception classes and by the orchestrator's final progress
message.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    outcome_message: str
    suggested_fix: str


# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Input errors (fail fast, no retry)
    # ==========================================================================
    "INVALID_INPUT": {
        "retryable": False,
        "outcome_message": "Export failed: invalid export parameters",
        "suggested_fix": "Check duration, frame rate, output size and that at least one clip is placed",
    },
    "EXPORT_IN_PROGRESS": {
        "retryable": False,
        "outcome_message": "Export failed: another export is already running",
        "suggested_fix": "Wait for the running export to finish",
    },
    # ==========================================================================
    # Video capture errors (terminal)
    # ==========================================================================
    "NO_RENDER_TARGET": {
        "retryable": False,
        "outcome_message": "Export failed: the preview canvas is not available",
        "suggested_fix": "Make sure the preview is visible before exporting",
    },
    "EMPTY_CAPTURE": {
        "retryable": False,
        "outcome_message": "Export failed: no video frames were recorded",
    },
    "RENDERER_UNRESPONSIVE": {
        "retryable": False,
        "outcome_message": "Export failed: the preview stopped responding",
    },
    "ENCODER_UNRESPONSIVE": {
        "retryable": False,
        "outcome_message": "Export failed: the encoder stopped responding",
    },
    # ==========================================================================
    # Resource errors (one retry with the degraded strategy)
    # ==========================================================================
    "RESOURCE_EXHAUSTED": {
        "retryable": True,
        "outcome_message": "Export failed: video too complex for available memory",
        "suggested_fix": "Try shorter clips, fewer items, or a smaller output size",
    },
    # ==========================================================================
    # Internal codec / source errors (absorbed by the audio path)
    # ==========================================================================
    "CODEC_COMMAND_FAILED": {
        "retryable": False,
        "outcome_message": "Export failed: encoder error",
    },
    "SOURCE_UNAVAILABLE": {
        "retryable": False,
        "outcome_message": "Export failed: a media source could not be read",
    },
    "INTERNAL_ERROR": {
        "retryable": False,
        "outcome_message": "Export failed: unexpected error",
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Return the spec for an error code, falling back to INTERNAL_ERROR."""
    return ERROR_CODES.get(code, ERROR_CODES["INTERNAL_ERROR"])
