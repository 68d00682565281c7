"""Interfaces the exporter expects from the application hosting a canvas."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from .geometry import BBox

CANVAS_KIND = "canvas"

# Class names the host puts on rendered canvas elements.
NODE_CLASS = "canvas-node"
EDGES_CONTAINER_CLASS = "canvas-edges"
LABEL_WRAPPER_CLASS = "canvas-path-label-wrapper"


@dataclass(frozen=True)
class Viewport:
    """Pan is the document point shown at the surface center; ``tz`` is log2(scale)."""

    tx: float
    ty: float
    tz: float

    @property
    def scale(self) -> float:
        return 2.0 ** self.tz


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class CaptureOptions:
    root: Any
    pixel_ratio: int
    width: float
    height: float
    background_color: str
    filter: Callable[[Any], bool]


class CanvasNode(Protocol):
    """A rendered node.

    Hosts may also expose ``get_bbox() -> Optional[BBox]`` for a refined
    box; it is looked up dynamically and is allowed to raise.
    """

    id: str
    x: float
    y: float
    width: float
    height: float
    initialized: bool
    content_mounted: bool
    element: Any


class CanvasEdge(Protocol):
    """A rendered edge; endpoints are node ids, never node objects.

    ``get_bbox()`` is optional here too.
    """

    id: str
    source_id: str
    target_id: str
    label_element: Optional[Any]
    line_elements: Sequence[Any]

    def get_center(self) -> Tuple[float, float]:
        ...


class RenderSurface(Protocol):
    width: float
    height: float
    root: Any

    def measure_bounding_box(self, element: Any) -> Rect:
        ...

    def get_computed_background_color(self) -> str:
        ...

    async def capture_subtree(self, options: CaptureOptions) -> bytes:
        ...


class InteractionGuard(Protocol):
    def remove(self) -> None:
        ...


class CanvasDocument(Protocol):
    id: str
    kind: str
    nodes: Mapping[str, CanvasNode]
    edges: Mapping[str, CanvasEdge]
    surface: Optional[RenderSurface]

    def get_viewport(self) -> Viewport:
        ...

    def set_viewport(self, viewport: Viewport) -> None:
        ...

    def get_selection(self) -> frozenset:
        ...

    def set_selection(self, selection: Iterable[str]) -> None:
        ...

    def set_export_flags(self, *, exporting: bool, presentation: bool) -> None:
        ...

    def install_interaction_guard(self) -> InteractionGuard:
        ...


class DocumentRegistry(Protocol):
    def document_ids(self, kind: str = CANVAS_KIND) -> List[str]:
        ...

    def find(self, document_id: str) -> Optional[CanvasDocument]:
        ...

    async def open(self, document_id: str) -> Optional[CanvasDocument]:
        ...


def visible_bbox(viewport: Viewport, surface_width: float, surface_height: float) -> BBox:
    """Document-space box currently visible through ``viewport``."""
    half_w = surface_width / viewport.scale / 2
    half_h = surface_height / viewport.scale / 2
    return BBox(viewport.tx - half_w, viewport.ty - half_h, viewport.tx + half_w, viewport.ty + half_h)
