"""Headless host for JSON Canvas (``.canvas``) documents.

Documents loaded here implement the host interfaces in :mod:`canvasshot.host`
without a browser: nodes and edges are laid out into a shared tree of
:class:`~canvasshot.rasterize.RenderElement` objects, measured with Pillow
fonts and rasterized with :func:`~canvasshot.rasterize.render_png`.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import InvalidTargetError
from .framing import zoom_to_bbox
from .geometry import BBox
from .host import (
    CANVAS_KIND,
    EDGES_CONTAINER_CLASS,
    LABEL_WRAPPER_CLASS,
    NODE_CLASS,
    CaptureOptions,
    Rect,
    Viewport,
)
from .rasterize import EdgeShape, LabelShape, NodeShape, Projection, RenderElement, render_png

logger = logging.getLogger(__name__)

CANVAS_SUFFIX = ".canvas"
NODE_TYPES = {"text", "file", "link", "group"}
SIDES = {"top", "right", "bottom", "left"}
EDGE_ENDS = {"none", "arrow"}
DEFAULT_SURFACE_SIZE = (1200, 800)
THEME_BACKGROUNDS = {"light": "#ffffff", "dark": "#1e1e1e"}
FILE_PREVIEW_CHARS = 2000


@dataclass
class HeadlessNode:
    id: str
    type: str
    x: float
    y: float
    width: float
    height: float
    text: str = ""
    file: Optional[str] = None
    url: Optional[str] = None
    label: Optional[str] = None
    color: Optional[str] = None
    initialized: bool = False
    content_mounted: bool = False
    element: Optional[RenderElement] = field(default=None, repr=False)

    def get_bbox(self) -> BBox:
        return BBox.from_rect(self.x, self.y, self.width, self.height)

    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def anchor(self, side: str) -> Tuple[float, float]:
        cx, cy = self.center()
        if side == "top":
            return cx, self.y
        if side == "bottom":
            return cx, self.y + self.height
        if side == "left":
            return self.x, cy
        return self.x + self.width, cy

    def display_text(self) -> str:
        if self.type == "group":
            return self.label or ""
        if self.type == "file":
            return self.text or (self.file or "")
        if self.type == "link":
            return self.url or ""
        return self.text


@dataclass
class HeadlessEdge:
    id: str
    source_id: str
    target_id: str
    from_side: Optional[str] = None
    to_side: Optional[str] = None
    from_end: str = "none"
    to_end: str = "arrow"
    label: Optional[str] = None
    color: Optional[str] = None
    points: List[Tuple[float, float]] = field(default_factory=list)
    line_element: Optional[RenderElement] = field(default=None, repr=False)
    arrow_element: Optional[RenderElement] = field(default=None, repr=False)
    label_element: Optional[RenderElement] = field(default=None, repr=False)

    @property
    def line_elements(self) -> List[RenderElement]:
        return [el for el in (self.line_element, self.arrow_element) if el is not None]

    def get_center(self) -> Tuple[float, float]:
        if not self.points:
            raise RuntimeError(f"edge {self.id} has not been laid out")
        (x0, y0), (x1, y1) = self.points[0], self.points[-1]
        return (x0 + x1) / 2, (y0 + y1) / 2

    def get_bbox(self) -> Optional[BBox]:
        if not self.points:
            return None
        xs = [p[0] for p in self.points]
        ys = [p[1] for p in self.points]
        return BBox(min(xs), min(ys), max(xs), max(ys))


class InteractionBlocker:
    """Progress overlay that blocks interaction while an export runs."""

    def __init__(self, body: RenderElement, message: str = "Generating image...") -> None:
        self.element = RenderElement("div", ["progress-bar-container"], data=message)
        body.append(self.element)

    @property
    def attached(self) -> bool:
        return self.element.parent is not None

    def remove(self) -> None:
        self.element.remove()


class HeadlessSurface:
    def __init__(
        self,
        document: "HeadlessCanvas",
        root: RenderElement,
        size: Tuple[float, float],
        background: str,
    ) -> None:
        self.document = document
        self.root = root
        self.width, self.height = float(size[0]), float(size[1])
        self.background = background

    def _projection(self) -> Projection:
        return Projection(self.document.get_viewport(), self.width, self.height, 1.0)

    def measure_bounding_box(self, element: Any) -> Rect:
        """On-screen rectangle of ``element`` at the current viewport."""
        data = getattr(element, "data", None)
        projection = self._projection()
        if isinstance(data, NodeShape):
            x0, y0 = projection.point(data.x, data.y)
            x1, y1 = projection.point(data.x + data.width, data.y + data.height)
            return Rect(x0, y0, x1 - x0, y1 - y0)
        if isinstance(data, LabelShape):
            width, height = data.size()
            cx, cy = projection.point(*data.center)
            w, h = width * projection.factor, height * projection.factor
            return Rect(cx - w / 2, cy - h / 2, w, h)
        if isinstance(data, EdgeShape) and data.points:
            points = [projection.point(x, y) for x, y in data.points]
            xs = [p[0] for p in points]
            ys = [p[1] for p in points]
            return Rect(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))
        raise ValueError(f"cannot measure {element!r}")

    def get_computed_background_color(self) -> str:
        return self.background

    async def capture_subtree(self, options: CaptureOptions) -> bytes:
        viewport = self.document.get_viewport()
        return await asyncio.to_thread(
            render_png,
            options.root,
            viewport=viewport,
            surface_size=(self.width, self.height),
            pixel_ratio=options.pixel_ratio,
            width=options.width,
            height=options.height,
            background_color=options.background_color,
            filter=options.filter,
        )


class HeadlessCanvas:
    def __init__(
        self,
        document_id: str,
        nodes: Iterable[HeadlessNode],
        edges: Iterable[HeadlessEdge],
        *,
        base_dir: Optional[Path] = None,
        kind: str = CANVAS_KIND,
    ) -> None:
        self.id = document_id
        self.kind = kind
        self.base_dir = base_dir
        self.nodes: Dict[str, HeadlessNode] = {node.id: node for node in nodes}
        self.edges: Dict[str, HeadlessEdge] = {edge.id: edge for edge in edges}
        self.surface: Optional[HeadlessSurface] = None
        self.viewport = Viewport(0.0, 0.0, 0.0)
        self.viewport_history: List[Viewport] = []
        self.selection: frozenset = frozenset()
        self.screenshotting = False
        self.classes: Set[str] = set()
        self._body: Optional[RenderElement] = None
        self._elements: List[RenderElement] = []

    # host document interface

    def get_viewport(self) -> Viewport:
        return self.viewport

    def set_viewport(self, viewport: Viewport) -> None:
        self.viewport = viewport
        self.viewport_history.append(viewport)

    def get_selection(self) -> frozenset:
        return self.selection

    def set_selection(self, selection: Iterable[str]) -> None:
        self.selection = frozenset(selection)

    def set_export_flags(self, *, exporting: bool, presentation: bool) -> None:
        self.screenshotting = exporting
        if presentation:
            self.classes.add("is-exporting")
        else:
            self.classes.discard("is-exporting")

    def install_interaction_guard(self) -> InteractionBlocker:
        if self._body is None:
            raise RuntimeError(f"canvas {self.id} is not attached to a render tree")
        return InteractionBlocker(self._body)

    # rendering

    def attach(
        self,
        body: RenderElement,
        canvas_root: RenderElement,
        edges_root: RenderElement,
        *,
        size: Tuple[float, float] = DEFAULT_SURFACE_SIZE,
        background: str = THEME_BACKGROUNDS["light"],
    ) -> HeadlessSurface:
        self.detach()
        self._body = body
        ordered = sorted(self.nodes.values(), key=lambda n: n.type != "group")
        for node in ordered:
            node.element = canvas_root.append(
                RenderElement("div", [NODE_CLASS, f"canvas-node-{node.type}"], owner=self.id)
            )
            self._elements.append(node.element)
        for edge in self.edges.values():
            edge.line_element = edges_root.append(
                RenderElement("g", ["canvas-path"], owner=self.id, role="line")
            )
            edge.arrow_element = edges_root.append(
                RenderElement("g", ["canvas-path-end"], owner=self.id, role="arrow")
            )
            self._elements.extend([edge.line_element, edge.arrow_element])
            if edge.label:
                edge.label_element = canvas_root.append(
                    RenderElement("div", [LABEL_WRAPPER_CLASS], owner=self.id)
                )
                self._elements.append(edge.label_element)
        self.layout()
        self.surface = HeadlessSurface(self, canvas_root, size, background)
        self.viewport = self.fit_viewport()
        return self.surface

    def detach(self) -> None:
        for element in self._elements:
            element.remove()
        self._elements = []
        self.surface = None

    def layout(self) -> None:
        for node in self.nodes.values():
            if node.element is not None:
                node.element.data = NodeShape(
                    node.x,
                    node.y,
                    node.width,
                    node.height,
                    text=node.display_text(),
                    color=node.color,
                    group=node.type == "group",
                )
        for edge in self.edges.values():
            source = self.nodes[edge.source_id]
            target = self.nodes[edge.target_id]
            from_side, to_side = _edge_sides(source, target, edge.from_side, edge.to_side)
            edge.points = [source.anchor(from_side), target.anchor(to_side)]
            shape = EdgeShape(
                list(edge.points),
                color=edge.color,
                arrow_at_end=edge.to_end == "arrow",
                arrow_at_start=edge.from_end == "arrow",
            )
            for element in edge.line_elements:
                element.data = shape
            if edge.label_element is not None:
                edge.label_element.data = LabelShape(edge.get_center(), edge.label or "")

    def fit_viewport(self) -> Viewport:
        """Interactive zoom-to-fit: never zooms in past 100%."""
        if self.surface is None or not self.nodes:
            return self.viewport
        box = BBox(
            min(n.x for n in self.nodes.values()),
            min(n.y for n in self.nodes.values()),
            max(n.x + n.width for n in self.nodes.values()),
            max(n.y + n.height for n in self.nodes.values()),
        )
        if not (box.width > 0 and box.height > 0):
            cx, cy = box.center
            return Viewport(cx, cy, 0.0)
        return zoom_to_bbox(box, self.surface.width, self.surface.height, clamp=True)

    async def mount(self) -> None:
        """Load node content, flipping each node's readiness flags as it finishes."""
        for node in list(self.nodes.values()):
            node.initialized = True
            if node.type == "file" and node.file:
                node.text = await asyncio.to_thread(_read_preview, self.base_dir, node.file)
            else:
                await asyncio.sleep(0)
            node.content_mounted = True
        self.layout()
        logger.debug("canvas %s mounted %d nodes", self.id, len(self.nodes))


def _read_preview(base_dir: Optional[Path], name: str) -> str:
    path = Path(name)
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    try:
        with path.open("r", encoding="utf-8", errors="replace") as fh:
            return fh.read(FILE_PREVIEW_CHARS)
    except OSError as exc:
        logger.debug("file node content unavailable (%s): %s", path, exc)
        return f"{name} (missing)"


def _edge_sides(
    source: HeadlessNode,
    target: HeadlessNode,
    from_side: Optional[str],
    to_side: Optional[str],
) -> Tuple[str, str]:
    sx, sy = source.center()
    tx, ty = target.center()
    dx, dy = tx - sx, ty - sy
    if abs(dx) >= abs(dy):
        auto_from, auto_to = ("right", "left") if dx >= 0 else ("left", "right")
    else:
        auto_from, auto_to = ("bottom", "top") if dy >= 0 else ("top", "bottom")
    return from_side or auto_from, to_side or auto_to


def _number(raw: Mapping[str, Any], key: str, where: str) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"{where}: '{key}' must be a finite number, got {value!r}")
    return float(value)


def _optional_str(raw: Mapping[str, Any], key: str, where: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{where}: '{key}' must be a string, got {value!r}")
    return value


def _choice(raw: Mapping[str, Any], key: str, allowed: Set[str], where: str) -> Optional[str]:
    value = _optional_str(raw, key, where)
    if value is not None and value not in allowed:
        raise ValueError(f"{where}: '{key}' must be one of {sorted(allowed)}, got {value!r}")
    return value


def _parse_node(raw: Any, index: int) -> HeadlessNode:
    where = f"nodes[{index}]"
    if not isinstance(raw, dict):
        raise ValueError(f"{where}: expected an object")
    node_id = raw.get("id")
    if not isinstance(node_id, str) or not node_id:
        raise ValueError(f"{where}: 'id' must be a non-empty string")
    node_type = _choice(raw, "type", NODE_TYPES, where) or "text"
    width = _number(raw, "width", where)
    height = _number(raw, "height", where)
    if width < 0 or height < 0:
        raise ValueError(f"{where}: width and height must be >= 0")
    return HeadlessNode(
        id=node_id,
        type=node_type,
        x=_number(raw, "x", where),
        y=_number(raw, "y", where),
        width=width,
        height=height,
        text=_optional_str(raw, "text", where) or "",
        file=_optional_str(raw, "file", where),
        url=_optional_str(raw, "url", where),
        label=_optional_str(raw, "label", where),
        color=_optional_str(raw, "color", where),
    )


def _parse_edge(raw: Any, index: int, node_ids: Set[str]) -> HeadlessEdge:
    where = f"edges[{index}]"
    if not isinstance(raw, dict):
        raise ValueError(f"{where}: expected an object")
    edge_id = raw.get("id")
    if not isinstance(edge_id, str) or not edge_id:
        raise ValueError(f"{where}: 'id' must be a non-empty string")
    source = raw.get("fromNode")
    target = raw.get("toNode")
    for key, value in (("fromNode", source), ("toNode", target)):
        if value not in node_ids:
            raise ValueError(f"{where}: '{key}' references unknown node {value!r}")
    return HeadlessEdge(
        id=edge_id,
        source_id=source,
        target_id=target,
        from_side=_choice(raw, "fromSide", SIDES, where),
        to_side=_choice(raw, "toSide", SIDES, where),
        from_end=_choice(raw, "fromEnd", EDGE_ENDS, where) or "none",
        to_end=_choice(raw, "toEnd", EDGE_ENDS, where) or "arrow",
        label=_optional_str(raw, "label", where),
        color=_optional_str(raw, "color", where),
    )


def load_canvas(
    data: Mapping[str, Any], document_id: str, *, base_dir: Optional[Path] = None
) -> HeadlessCanvas:
    """Build a document from parsed JSON Canvas data."""
    if not isinstance(data, Mapping):
        raise ValueError("canvas data must be a JSON object")
    raw_nodes = data.get("nodes", [])
    raw_edges = data.get("edges", [])
    if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
        raise ValueError("'nodes' and 'edges' must be arrays")

    nodes = [_parse_node(raw, index) for index, raw in enumerate(raw_nodes)]
    node_ids: Set[str] = set()
    for node in nodes:
        if node.id in node_ids:
            raise ValueError(f'duplicate node id "{node.id}"')
        node_ids.add(node.id)
    edges = [_parse_edge(raw, index, node_ids) for index, raw in enumerate(raw_edges)]
    edge_ids: Set[str] = set()
    for edge in edges:
        if edge.id in edge_ids:
            raise ValueError(f'duplicate edge id "{edge.id}"')
        edge_ids.add(edge.id)
    return HeadlessCanvas(document_id, nodes, edges, base_dir=base_dir)


def parse_canvas(text: str, document_id: str, *, base_dir: Optional[Path] = None) -> HeadlessCanvas:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Failed to parse canvas JSON at line {exc.lineno}, column {exc.colno}: {exc.msg}"
        ) from exc
    return load_canvas(data, document_id, base_dir=base_dir)


class HeadlessRegistry:
    """Open canvas documents sharing one render tree.

    Document ids are paths relative to ``root_dir``.
    """

    def __init__(
        self,
        root_dir: Optional[Path] = None,
        *,
        surface_size: Tuple[float, float] = DEFAULT_SURFACE_SIZE,
        theme: str = "light",
        background: Optional[str] = None,
    ) -> None:
        if theme not in THEME_BACKGROUNDS:
            raise ValueError(f"unknown theme {theme!r}")
        self.root_dir = Path(root_dir) if root_dir is not None else Path.cwd()
        self.surface_size = surface_size
        self.background = background or THEME_BACKGROUNDS[theme]
        self.body = RenderElement("body", [f"theme-{theme}"])
        self.canvas_root = self.body.append(RenderElement("div", ["canvas-wrapper"]))
        self.edges_root = self.canvas_root.append(RenderElement("svg", [EDGES_CONTAINER_CLASS]))
        self._documents: Dict[str, HeadlessCanvas] = {}
        self._mount_tasks: Set["asyncio.Task[None]"] = set()

    def document_ids(self, kind: str = CANVAS_KIND) -> List[str]:
        return [doc_id for doc_id, doc in self._documents.items() if doc.kind == kind]

    def find(self, document_id: str) -> Optional[HeadlessCanvas]:
        return self._documents.get(document_id)

    def add(self, document: HeadlessCanvas) -> HeadlessCanvas:
        """Render ``document`` into the shared tree without mounting its content."""
        if document.id in self._documents:
            raise ValueError(f"document already open: {document.id}")
        document.attach(
            self.body,
            self.canvas_root,
            self.edges_root,
            size=self.surface_size,
            background=self.background,
        )
        self._documents[document.id] = document
        return document

    async def open(self, document_id: str) -> Optional[HeadlessCanvas]:
        existing = self.find(document_id)
        if existing is not None:
            return existing
        path = self.root_dir / document_id
        if not path.is_file():
            return None
        if path.suffix != CANVAS_SUFFIX:
            raise InvalidTargetError(f"file is not a canvas file: {document_id}")
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        # Another caller may have opened it while the file was being read.
        existing = self.find(document_id)
        if existing is not None:
            return existing
        document = self.add(parse_canvas(text, document_id, base_dir=path.parent))
        task = asyncio.get_running_loop().create_task(document.mount())
        self._mount_tasks.add(task)
        task.add_done_callback(self._mount_tasks.discard)
        logger.debug("opened canvas %s", document_id)
        return document

    def close(self, document_id: str) -> None:
        document = self._documents.pop(document_id, None)
        if document is not None:
            document.detach()
