"""Categorized export failures."""
from __future__ import annotations

from typing import Sequence


class CanvasExportError(Exception):
    """Base class for export failures, each with a stable code."""

    code = "E_EXPORT"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidTargetError(CanvasExportError):
    code = "E_INVALID_TARGET"


class DegenerateGeometryError(CanvasExportError, ValueError):
    code = "E_DEGENERATE_GEOMETRY"


class RenderTimeoutError(CanvasExportError):
    code = "E_RENDER_TIMEOUT"

    def __init__(self, message: str, unready_node_ids: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.unready_node_ids = list(unready_node_ids)


class CaptureFailedError(CanvasExportError):
    code = "E_CAPTURE_FAILED"


class ExportBusyError(CanvasExportError):
    code = "E_EXPORT_BUSY"
