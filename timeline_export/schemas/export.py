from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timeline_export.render.frame_capture import CaptureSink, FrameRenderer
from timeline_export.schemas.clip import Clip


class ExportRequest(BaseModel):
    """Immutable input of one export invocation."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    clips: list[Clip] = Field(min_length=1)
    nominal_duration: float = Field(gt=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    frame_rate: float = Field(gt=0)

    # Capability handles, checked structurally against the capture protocols
    renderer: Any
    capture_sink: Any | None = None

    # Explicit video_id -> audio_id link table maintained by the timeline editor
    audio_links: dict[str, str] = Field(default_factory=dict)

    @field_validator("renderer")
    @classmethod
    def _check_renderer(cls, v: Any) -> Any:
        if not isinstance(v, FrameRenderer):
            raise ValueError(
                f"renderer must provide has_surface, seek, wait_render_cycle and snapshot, got {type(v).__name__}"
            )
        return v

    @field_validator("capture_sink")
    @classmethod
    def _check_capture_sink(cls, v: Any) -> Any:
        if v is not None and not isinstance(v, CaptureSink):
            raise ValueError(
                f"capture_sink must provide mime_type, open, write_frame, close and abort, got {type(v).__name__}"
            )
        return v

    @property
    def visual_clips(self) -> list[Clip]:
        return [c for c in self.clips if c.is_visual]
