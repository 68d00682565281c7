"""Restrict a capture to the elements of one canvas document."""
from __future__ import annotations

from typing import Any, Callable, Iterable

from .host import EDGES_CONTAINER_CLASS, LABEL_WRAPPER_CLASS, NODE_CLASS, CanvasEdge, CanvasNode


def _classes(element: Any) -> Iterable[str]:
    return getattr(element, "classes", None) or ()


class ElementFilter:
    """Inclusion predicate for the rasterizer.

    Canvas nodes, edge paths and label wrappers are kept only when they
    belong to this document; everything else passes through. Membership is
    by identity since several canvases can share one render tree.
    """

    def __init__(
        self,
        node_elements: Iterable[Any],
        edge_elements: Iterable[Any],
        label_elements: Iterable[Any],
    ) -> None:
        self._nodes = {id(el) for el in node_elements}
        self._edges = {id(el) for el in edge_elements}
        self._labels = {id(el) for el in label_elements}

    @classmethod
    def for_document(
        cls, nodes: Iterable[CanvasNode], edges: Iterable[CanvasEdge]
    ) -> "ElementFilter":
        edges = list(edges)
        return cls(
            (node.element for node in nodes),
            (el for edge in edges for el in edge.line_elements if el is not None),
            (edge.label_element for edge in edges if edge.label_element is not None),
        )

    def __call__(self, element: Any) -> bool:
        classes = _classes(element)
        if NODE_CLASS in classes and id(element) not in self._nodes:
            return False
        parent = getattr(element, "parent", None)
        if EDGES_CONTAINER_CLASS in _classes(parent) and id(element) not in self._edges:
            return False
        if LABEL_WRAPPER_CLASS in classes and id(element) not in self._labels:
            return False
        return True

    def as_predicate(self) -> Callable[[Any], bool]:
        return self.__call__
