"""Pillow rasterizer for the headless canvas render tree."""
from __future__ import annotations

import io
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from PIL import Image, ImageColor, ImageDraw, ImageFont

from .host import Viewport

logger = logging.getLogger(__name__)

DEFAULT_FONT_SIZE = 16.0
LABEL_FONT_SIZE = 14.0
LABEL_PADDING = 4.0
NODE_PADDING = 12.0
EDGE_WIDTH = 2.0
ARROW_SIZE = 12.0

DEFAULT_STROKE = "#7e7e7e"
# JSON Canvas preset colors "1".."6".
PRESET_COLORS = {
    "1": "#fb464c",
    "2": "#e9973f",
    "3": "#e0de71",
    "4": "#44cf6e",
    "5": "#53dfdd",
    "6": "#a882ff",
}


class RenderElement:
    """Minimal stand-in for a DOM element in the headless render tree."""

    def __init__(
        self,
        tag: str,
        classes: Sequence[str] = (),
        *,
        owner: Optional[str] = None,
        role: Optional[str] = None,
        data: Any = None,
    ) -> None:
        self.tag = tag
        self.classes: List[str] = list(classes)
        self.owner = owner
        self.role = role
        self.data = data
        self.parent: Optional[RenderElement] = None
        self.children: List[RenderElement] = []

    def append(self, child: "RenderElement") -> "RenderElement":
        if child.parent is not None:
            child.parent.children.remove(child)
        child.parent = self
        self.children.append(child)
        return child

    def remove(self) -> None:
        if self.parent is not None:
            self.parent.children.remove(self)
            self.parent = None

    def iter(self) -> Iterator["RenderElement"]:
        yield self
        for child in list(self.children):
            yield from child.iter()

    def __repr__(self) -> str:
        return f"<{self.tag} class={' '.join(self.classes)!r} owner={self.owner!r}>"


class TextMeasurer:
    """Caches Pillow fonts and measures single-line text in document units."""

    FONT_DIRS = [
        Path("/usr/share/fonts"),
        Path("/usr/local/share/fonts"),
        Path("/System/Library/Fonts"),
        Path("/Library/Fonts"),
        Path("C:/Windows/Fonts"),
    ]
    FONT_NAMES = ("DejaVuSans.ttf", "Arial.ttf", "Helvetica.ttc", "LiberationSans-Regular.ttf")

    def __init__(self) -> None:
        self._font_cache: Dict[int, Optional[ImageFont.ImageFont]] = {}
        self._font_path: Optional[str] = None
        self._font_path_resolved = False

    def font(self, size: float) -> Optional[ImageFont.ImageFont]:
        key_size = max(1, int(round(size)))
        if key_size in self._font_cache:
            return self._font_cache[key_size]

        font: Optional[ImageFont.ImageFont] = None
        for candidate in self._candidates():
            try:
                font = ImageFont.truetype(candidate, key_size)
                break
            except OSError:
                continue
        if font is None:
            font = ImageFont.load_default(key_size)
        self._font_cache[key_size] = font
        return font

    def measure(self, text: str, size: float) -> float:
        font = self.font(size)
        if font is None:
            return _heuristic_width(text, size)
        return float(font.getlength(text))

    def line_height(self, size: float) -> float:
        font = self.font(size)
        if font is None or not hasattr(font, "getmetrics"):
            return 1.2 * size
        ascent, descent = font.getmetrics()
        return float(ascent + descent)

    def _candidates(self) -> List[str]:
        candidates = list(self.FONT_NAMES[:1])
        resolved = self._locate_font()
        if resolved:
            candidates.insert(0, resolved)
        return candidates

    def _locate_font(self) -> Optional[str]:
        if self._font_path_resolved:
            return self._font_path
        self._font_path_resolved = True
        for directory in self.FONT_DIRS:
            if not directory.exists():
                continue
            for name in self.FONT_NAMES:
                try:
                    match = next(directory.rglob(name), None)
                except OSError:
                    match = None
                if match is not None:
                    self._font_path = str(match)
                    return self._font_path
        return None


def _heuristic_width(text: str, font_size: float) -> float:
    return 0.6 * font_size * len(text)


TEXT_MEASURER = TextMeasurer()


def parse_color(value: Optional[str], default: str = DEFAULT_STROKE) -> Tuple[int, int, int, int]:
    raw = (value or "").strip()
    raw = PRESET_COLORS.get(raw, raw)
    try:
        rgba = ImageColor.getcolor(raw or default, "RGBA")
    except ValueError:
        logger.debug("unparseable color %r, using %s", value, default)
        rgba = ImageColor.getcolor(default, "RGBA")
    return rgba  # type: ignore[return-value]


@dataclass
class NodeShape:
    x: float
    y: float
    width: float
    height: float
    text: str = ""
    color: Optional[str] = None
    group: bool = False


@dataclass
class EdgeShape:
    points: List[Tuple[float, float]] = field(default_factory=list)
    color: Optional[str] = None
    arrow_at_end: bool = True
    arrow_at_start: bool = False


@dataclass
class LabelShape:
    center: Tuple[float, float]
    text: str

    def size(self) -> Tuple[float, float]:
        width = TEXT_MEASURER.measure(self.text, LABEL_FONT_SIZE) + 2 * LABEL_PADDING
        height = TEXT_MEASURER.line_height(LABEL_FONT_SIZE) + 2 * LABEL_PADDING
        return width, height


@dataclass(frozen=True)
class Projection:
    viewport: Viewport
    surface_width: float
    surface_height: float
    pixel_ratio: float

    @property
    def factor(self) -> float:
        return self.viewport.scale * self.pixel_ratio

    def point(self, x: float, y: float) -> Tuple[float, float]:
        s = self.viewport.scale
        sx = (x - self.viewport.tx) * s + self.surface_width / 2
        sy = (y - self.viewport.ty) * s + self.surface_height / 2
        return sx * self.pixel_ratio, sy * self.pixel_ratio


def render_png(
    root: RenderElement,
    *,
    viewport: Viewport,
    surface_size: Tuple[float, float],
    pixel_ratio: float,
    width: float,
    height: float,
    background_color: str,
    filter: Callable[[Any], bool],
) -> bytes:
    """Rasterize ``root`` as seen through ``viewport``, skipping filtered subtrees."""
    if not (width > 0 and height > 0) or pixel_ratio <= 0:
        raise ValueError(f"invalid capture size {width!r}x{height!r} at ratio {pixel_ratio!r}")
    out_w = max(1, int(math.ceil(round(width * pixel_ratio, 6))))
    out_h = max(1, int(math.ceil(round(height * pixel_ratio, 6))))
    background = parse_color(background_color, "#ffffff")
    image = Image.new("RGBA", (out_w, out_h), background)
    draw = ImageDraw.Draw(image, "RGBA")
    projection = Projection(viewport, surface_size[0], surface_size[1], pixel_ratio)

    for element in _visible(root, filter):
        data = element.data
        if isinstance(data, NodeShape):
            _draw_node(draw, data, projection)
        elif isinstance(data, EdgeShape):
            _draw_edge(draw, element.role, data, projection)
        elif isinstance(data, LabelShape):
            _draw_label(draw, data, projection, background)

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _visible(root: RenderElement, keep: Callable[[Any], bool]) -> Iterator[RenderElement]:
    if not keep(root):
        return
    yield root
    for child in list(root.children):
        yield from _visible(child, keep)


def _draw_node(draw: ImageDraw.ImageDraw, node: NodeShape, projection: Projection) -> None:
    x0, y0 = projection.point(node.x, node.y)
    x1, y1 = projection.point(node.x + node.width, node.y + node.height)
    stroke = parse_color(node.color)
    fill = stroke[:3] + (24 if node.group else 40,)
    factor = projection.factor
    radius = max(0, int(round(8 * factor)))
    line_width = max(1, int(round(EDGE_WIDTH * factor)))
    draw.rounded_rectangle([x0, y0, x1, y1], radius=radius, fill=fill, outline=stroke, width=line_width)
    if not node.text:
        return
    font_px = DEFAULT_FONT_SIZE * factor
    if font_px < 4:
        return
    font = TEXT_MEASURER.font(font_px)
    pad = NODE_PADDING * factor
    anchor_y = y0 - font_px * 1.4 if node.group else y0 + pad
    line_px = TEXT_MEASURER.line_height(font_px)
    for index, line in enumerate(_wrap(node.text, node.width - 2 * NODE_PADDING)):
        ty = anchor_y + index * line_px
        if not node.group and ty + line_px > y1 - pad / 2:
            break
        draw.text((x0 + pad, ty), line, fill=(34, 34, 34, 255), font=font)
        if node.group:
            break


def _draw_edge(
    draw: ImageDraw.ImageDraw, role: Optional[str], edge: EdgeShape, projection: Projection
) -> None:
    if len(edge.points) < 2:
        return
    color = parse_color(edge.color)
    points = [projection.point(x, y) for x, y in edge.points]
    factor = projection.factor
    if role == "line":
        draw.line(points, fill=color, width=max(1, int(round(EDGE_WIDTH * factor))), joint="curve")
        return
    if role == "arrow":
        size = ARROW_SIZE * factor
        if edge.arrow_at_end:
            draw.polygon(_arrow_head(points[-2], points[-1], size), fill=color)
        if edge.arrow_at_start:
            draw.polygon(_arrow_head(points[1], points[0], size), fill=color)


def _arrow_head(
    tail: Tuple[float, float], tip: Tuple[float, float], size: float
) -> List[Tuple[float, float]]:
    angle = math.atan2(tip[1] - tail[1], tip[0] - tail[0])
    spread = math.radians(28)
    left = (tip[0] - size * math.cos(angle - spread), tip[1] - size * math.sin(angle - spread))
    right = (tip[0] - size * math.cos(angle + spread), tip[1] - size * math.sin(angle + spread))
    return [tip, left, right]


def _draw_label(
    draw: ImageDraw.ImageDraw,
    label: LabelShape,
    projection: Projection,
    background: Tuple[int, int, int, int],
) -> None:
    factor = projection.factor
    font_px = LABEL_FONT_SIZE * factor
    if font_px < 4:
        return
    width, height = label.size()
    cx, cy = projection.point(*label.center)
    half_w = width * factor / 2
    half_h = height * factor / 2
    draw.rectangle([cx - half_w, cy - half_h, cx + half_w, cy + half_h], fill=background)
    text_w = TEXT_MEASURER.measure(label.text, font_px)
    text_h = TEXT_MEASURER.line_height(font_px)
    draw.text(
        (cx - text_w / 2, cy - text_h / 2),
        label.text,
        fill=(34, 34, 34, 255),
        font=TEXT_MEASURER.font(font_px),
    )


def _wrap(text: str, max_width: float) -> List[str]:
    lines: List[str] = []
    for paragraph in text.splitlines() or [""]:
        words = re.split(r"\s+", paragraph.strip())
        current = ""
        for word in words:
            candidate = f"{current} {word}".strip()
            if current and TEXT_MEASURER.measure(candidate, DEFAULT_FONT_SIZE) > max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        lines.append(current)
    return lines
