"""Bounding box of everything a canvas export should show."""
from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from .geometry import BBox, combine
from .host import CanvasEdge, CanvasNode

logger = logging.getLogger(__name__)


def _refined_bbox(element: Any) -> Optional[BBox]:
    getter = getattr(element, "get_bbox", None)
    if not callable(getter):
        return None
    try:
        return getter()
    except Exception as exc:
        logger.debug("get_bbox failed for %s: %s", getattr(element, "id", element), exc)
        return None


def node_bbox(node: CanvasNode) -> BBox:
    bbox = _refined_bbox(node)
    if bbox is not None:
        return bbox
    return BBox.from_rect(node.x, node.y, node.width, node.height)


class BoundingBoxCalculator:
    """Combines node boxes (with coordinate fallback) and measurable edge boxes."""

    def boxes(self, nodes: Iterable[CanvasNode], edges: Iterable[CanvasEdge]) -> List[BBox]:
        collected = [node_bbox(node) for node in nodes]
        for edge in edges:
            bbox = _refined_bbox(edge)
            if bbox is not None:
                collected.append(bbox)
        return collected

    def calculate(self, nodes: Iterable[CanvasNode], edges: Iterable[CanvasEdge]) -> BBox:
        return combine(self.boxes(nodes, edges))
