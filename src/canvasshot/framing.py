"""Two-pass zoom/pan framing of a canvas for export."""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .config import ExportConfig
from .errors import DegenerateGeometryError
from .geometry import BBox, combine, fit_aspect, fit_aspect_size, scale
from .host import CanvasDocument, CanvasEdge, RenderSurface, Viewport, visible_bbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameResult:
    content_box: BBox
    working_box: BBox
    adjusted_box: BBox
    pixel_ratio: int
    width: float
    height: float
    scale: float
    viewports: Tuple[Viewport, ...]


def require_extent(box: BBox, what: str) -> None:
    # `not x > 0` also rejects NaN and the empty (+inf/-inf) box.
    if not (box.width > 0 and box.height > 0):
        raise DegenerateGeometryError(
            f"{what} has no area (width={box.width!r}, height={box.height!r})"
        )


def required_ratio(box: BBox, surface_width: float, surface_height: float) -> float:
    """Document units per surface pixel needed to show all of ``box``."""
    return max(box.width / surface_width, box.height / surface_height)


def zoom_to_bbox(
    box: BBox, surface_width: float, surface_height: float, *, clamp: bool = False
) -> Viewport:
    """Viewport centered on ``box`` that fits it inside the surface.

    Interactive framing clamps the scale to 1 so it never zooms in past
    100%; export framing passes ``clamp=False`` to fit arbitrarily large
    canvases.
    """
    require_extent(box, "frame target")
    zoom = min(surface_width / box.width, surface_height / box.height)
    if clamp:
        zoom = min(zoom, 1.0)
    cx, cy = box.center
    return Viewport(cx, cy, math.log2(zoom))


class ViewportFramer:
    def __init__(self, config: Optional[ExportConfig] = None) -> None:
        self.config = config or ExportConfig()

    async def frame(self, document: CanvasDocument, content_box: BBox) -> FrameResult:
        surface = document.surface
        if surface is None:
            raise DegenerateGeometryError("document has no render surface to frame into")
        sw, sh = float(surface.width), float(surface.height)
        if not (sw > 0 and sh > 0):
            raise DegenerateGeometryError(f"render surface has no area ({sw!r}x{sh!r})")
        require_extent(content_box, "canvas content")
        surface_aspect = sw / sh

        working = scale(content_box, self.config.zoom_margin)
        ratio = required_ratio(working, sw, sh)
        pixel_ratio = max(1, round(ratio * self.config.pixel_ratio_factor))
        adjusted = fit_aspect(working, surface_aspect)
        logger.debug(
            "framing pass 1: content=%s working=%s adjusted=%s ratio=%.4f pixel_ratio=%d",
            content_box,
            working,
            adjusted,
            ratio,
            pixel_ratio,
        )
        first = await self._apply(document, adjusted, sw, sh)

        labels = self.label_bbox(document.edges.values(), surface, document.get_viewport())
        if not labels.is_degenerate:
            padded = scale(labels, self.config.label_margin)
            working = combine([working, padded])
            adjusted = combine([adjusted, padded])
        adjusted = fit_aspect(adjusted, surface_aspect)
        logger.debug("framing pass 2: labels=%s adjusted=%s", labels, adjusted)
        second = await self._apply(document, adjusted, sw, sh)

        final = document.get_viewport()
        visible = visible_bbox(final, sw, sh)
        width, height = fit_aspect_size(
            visible.width * final.scale, visible.height * final.scale, surface_aspect
        )
        logger.debug("capture dimensions: %.2fx%.2f at scale %.6f", width, height, final.scale)
        return FrameResult(
            content_box=content_box,
            working_box=working,
            adjusted_box=adjusted,
            pixel_ratio=pixel_ratio,
            width=width,
            height=height,
            scale=final.scale,
            viewports=(first, second),
        )

    def label_bbox(
        self, edges: Iterable[CanvasEdge], surface: RenderSurface, viewport: Viewport
    ) -> BBox:
        """Document-space box of every edge label, measured at the current zoom."""
        render_scale = viewport.scale
        boxes: List[BBox] = []
        for edge in edges:
            if edge.label_element is None:
                continue
            rect = surface.measure_bounding_box(edge.label_element)
            cx, cy = edge.get_center()
            half_w = rect.width / render_scale / 2
            half_h = rect.height / render_scale / 2
            boxes.append(BBox(cx - half_w, cy - half_h, cx + half_w, cy + half_h))
        return combine(boxes)

    async def _apply(
        self, document: CanvasDocument, box: BBox, surface_width: float, surface_height: float
    ) -> Viewport:
        viewport = zoom_to_bbox(box, surface_width, surface_height)
        document.set_viewport(viewport)
        await asyncio.sleep(self.config.settle_delay_ms / 1000)
        return viewport
