"""Axis-aligned bounding box helpers used to frame canvas content."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Tuple


@dataclass(frozen=True)
class BBox:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> Tuple[float, float]:
        return (self.min_x + self.max_x) / 2, (self.min_y + self.max_y) / 2

    @property
    def is_degenerate(self) -> bool:
        """True for the empty combination result or any inverted box."""
        return not (self.min_x <= self.max_x and self.min_y <= self.max_y)

    @classmethod
    def from_rect(cls, x: float, y: float, width: float, height: float) -> "BBox":
        return cls(x, y, x + width, y + height)


EMPTY_BBOX = BBox(math.inf, math.inf, -math.inf, -math.inf)


def combine(boxes: Iterable[BBox]) -> BBox:
    """Return the smallest box containing every input.

    An empty input yields ``EMPTY_BBOX`` (+inf mins, -inf maxes), which is
    neutral when combined again but must never be framed directly.
    """
    min_x = math.inf
    min_y = math.inf
    max_x = -math.inf
    max_y = -math.inf
    for box in boxes:
        min_x = min(min_x, box.min_x)
        min_y = min(min_y, box.min_y)
        max_x = max(max_x, box.max_x)
        max_y = max(max_y, box.max_y)
    return BBox(min_x, min_y, max_x, max_y)


def scale(box: BBox, factor: float) -> BBox:
    """Grow (or shrink) ``box`` around its own center; 1.1 means 10% larger."""
    diff_x = (factor - 1) * (box.max_x - box.min_x)
    diff_y = (factor - 1) * (box.max_y - box.min_y)
    return BBox(
        box.min_x - diff_x / 2,
        box.min_y - diff_y / 2,
        box.max_x + diff_x / 2,
        box.max_y + diff_y / 2,
    )


def pad(box: BBox, margin: float) -> BBox:
    """Expand ``box`` by an absolute ``margin`` on all four sides."""
    return BBox(
        box.min_x - margin,
        box.min_y - margin,
        box.max_x + margin,
        box.max_y + margin,
    )


def fit_aspect(box: BBox, aspect_ratio: float) -> BBox:
    """Extend ``box`` from its top-left corner until width/height == aspect_ratio.

    Only ``max_x`` or ``max_y`` moves, so the anchor stays fixed between
    successive framing passes.
    """
    if aspect_ratio > box.width / box.height:
        return BBox(box.min_x, box.min_y, box.min_x + box.height * aspect_ratio, box.max_y)
    return BBox(box.min_x, box.min_y, box.max_x, box.min_y + box.width / aspect_ratio)


def fit_aspect_size(width: float, height: float, aspect_ratio: float) -> Tuple[float, float]:
    if aspect_ratio > width / height:
        return height * aspect_ratio, height
    return width, width / aspect_ratio
