from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ClipKind(str, Enum):
    VIDEO = "video"
    IMAGE = "image"
    AUDIO = "audio"


class Clip(BaseModel):
    """A timed placement of one media asset on the timeline.

    Accepts both snake_case and the editor's camelCase keys
    (``startTime``, ``hasLinkedAudio``, ...).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str
    kind: ClipKind
    name: str | None = None
    subtype: str | None = None  # gif, webp, sticker for animated images

    start_time: float = Field(ge=0)
    duration: float = Field(gt=0)

    # Video -> audio linkage
    has_linked_audio: bool = False
    linked_audio_id: str | None = None

    # Audio -> video linkage
    source_video_id: str | None = None
    source_clip_id: str | None = None  # Origin asset id (also set on video clips)
    linked_video_id: str | None = None
    is_derived_from_video: bool = False

    # Borrowed raw bytes, or a path to them. Never mutated by the pipeline.
    raw_source: Path | bytes | None = Field(default=None, repr=False)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    @property
    def is_visual(self) -> bool:
        return self.kind in (ClipKind.VIDEO, ClipKind.IMAGE)
