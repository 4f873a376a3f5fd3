from timeline_export.schemas.clip import Clip, ClipKind
from timeline_export.schemas.export import ExportRequest

__all__ = [
    "Clip",
    "ClipKind",
    "ExportRequest",
]
