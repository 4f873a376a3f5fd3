from timeline_export.exceptions import ExportError
from timeline_export.exporter import export_composition, export_composition_fallback
from timeline_export.render.pipeline import ExportOrchestrator, ExportResult, ExportState
from timeline_export.schemas import Clip, ClipKind, ExportRequest

__all__ = [
    "Clip",
    "ClipKind",
    "ExportError",
    "ExportOrchestrator",
    "ExportRequest",
    "ExportResult",
    "ExportState",
    "export_composition",
    "export_composition_fallback",
]
