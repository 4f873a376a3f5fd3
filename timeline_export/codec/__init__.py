from timeline_export.codec.capture_sink import FFmpegCaptureSink
from timeline_export.codec.engine import FFmpegEngine, is_resource_exhaustion

__all__ = [
    "FFmpegEngine",
    "FFmpegCaptureSink",
    "is_resource_exhaustion",
]
