"""Export duration resolution.

The nominal timeline duration is a UI ceiling that usually runs past the
last clip. Exporting to it leaves trailing blank frames and silence, which
breaks seamless looping, so the export length is the last clip end time.
"""

import math
from typing import Iterable

from timeline_export.schemas.clip import Clip

# Rounding applied to duration * frame_rate before the ceiling, so that
# float products such as 0.1 * 30 = 3.0000000000000004 count as 3 frames.
_FRAME_COUNT_PRECISION = 6


def resolve_export_duration(clips: Iterable[Clip], nominal_duration: float) -> float:
    """Return the true export duration in seconds.

    Args:
        clips: All clips that will contribute to the export (visual clips and
            the resolved audio set, virtual audio clips included)
        nominal_duration: Timeline duration shown in the editor

    Returns:
        max(start_time + duration) over the clips, or ``nominal_duration``
        if there are none
    """
    end_times = [clip.start_time + clip.duration for clip in clips]
    if not end_times:
        return nominal_duration
    return max(end_times)


def total_frame_count(duration: float, frame_rate: float) -> int:
    """Number of frames needed to cover ``duration`` at ``frame_rate`` (at least 1)."""
    return max(1, math.ceil(round(duration * frame_rate, _FRAME_COUNT_PRECISION)))
