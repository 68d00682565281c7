"""Public API for canvasshot."""
from .errors import (
    CanvasExportError,
    CaptureFailedError,
    DegenerateGeometryError,
    ExportBusyError,
    InvalidTargetError,
    RenderTimeoutError,
)
from .export import ExportOrchestrator, ExportResult, ExportState, capture_canvas
from .geometry import BBox, combine, pad, scale
from .jsoncanvas import HeadlessRegistry, load_canvas, parse_canvas

__all__ = [
    "BBox",
    "combine",
    "scale",
    "pad",
    "ExportOrchestrator",
    "ExportResult",
    "ExportState",
    "capture_canvas",
    "HeadlessRegistry",
    "load_canvas",
    "parse_canvas",
    "CanvasExportError",
    "InvalidTargetError",
    "DegenerateGeometryError",
    "RenderTimeoutError",
    "CaptureFailedError",
    "ExportBusyError",
]
