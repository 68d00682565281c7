from __future__ import annotations

import math
import unittest

from _fixtures import FAST_CONFIG, edge, node, rendered_canvas

from canvasshot.errors import DegenerateGeometryError
from canvasshot.framing import ViewportFramer, required_ratio, zoom_to_bbox
from canvasshot.geometry import BBox


class ZoomToBBoxTests(unittest.TestCase):
    def test_centers_and_fits(self) -> None:
        viewport = zoom_to_bbox(BBox(0, 0, 400, 100), 200, 200)
        self.assertEqual((viewport.tx, viewport.ty), (200, 50))
        self.assertAlmostEqual(viewport.scale, 0.5)

    def test_interactive_clamp_never_zooms_past_one(self) -> None:
        box = BBox(0, 0, 10, 10)
        self.assertAlmostEqual(zoom_to_bbox(box, 500, 500).scale, 50)
        self.assertAlmostEqual(zoom_to_bbox(box, 500, 500, clamp=True).scale, 1)

    def test_zero_area_fails_fast(self) -> None:
        with self.assertRaises(DegenerateGeometryError):
            zoom_to_bbox(BBox(0, 0, 0, 10), 100, 100)
        with self.assertRaises(DegenerateGeometryError):
            zoom_to_bbox(BBox(0, 0, math.nan, 10), 100, 100)

    def test_required_ratio_is_not_clamped(self) -> None:
        self.assertAlmostEqual(required_ratio(BBox(0, 0, 5000, 100), 1000, 500), 5)


class ViewportFramerTests(unittest.IsolatedAsyncioTestCase):
    async def test_single_square_node_first_pass(self) -> None:
        width, surface = 100.0, 500.0
        document, _ = rendered_canvas("square", [node("a", 0, 0, width, width)], surface_size=(surface, surface))
        result = await ViewportFramer(FAST_CONFIG).frame(document, BBox(0, 0, width, width))

        first = result.viewports[0]
        self.assertAlmostEqual(first.scale, surface / (width * 1.1))
        self.assertAlmostEqual(first.tx, 50)
        self.assertAlmostEqual(first.ty, 50)
        self.assertEqual(result.pixel_ratio, 1)
        self.assertAlmostEqual(result.width, surface)
        self.assertAlmostEqual(result.height, surface)

    async def test_applies_two_observable_passes(self) -> None:
        document, _ = rendered_canvas("two", [node("a", 0, 0), node("b", 300, 0)], [edge("e", "a", "b")])
        result = await ViewportFramer(FAST_CONFIG).frame(document, BBox(0, 0, 400, 100))
        self.assertEqual(document.viewport_history, list(result.viewports))
        self.assertEqual(len(document.viewport_history), 2)

    async def test_labels_widen_second_pass(self) -> None:
        label = "a label that is much wider than either of the nodes it connects " * 2
        document, _ = rendered_canvas(
            "labels",
            [node("a", 0, 0, 50, 50), node("b", 0, 200, 50, 50)],
            [edge("e", "a", "b", label=label.strip())],
        )
        result = await ViewportFramer(FAST_CONFIG).frame(document, BBox(0, 0, 50, 250))
        first, second = result.viewports
        self.assertLess(second.scale, first.scale)
        self.assertLess(result.adjusted_box.min_x, 0)

    async def test_capture_matches_surface_aspect(self) -> None:
        document, _ = rendered_canvas(
            "aspect", [node("a", 0, 0, 1000, 40), node("b", 0, 900, 30, 30)], surface_size=(640, 480)
        )
        result = await ViewportFramer(FAST_CONFIG).frame(document, BBox(0, 0, 1000, 930))
        self.assertAlmostEqual(result.width / result.height, 640 / 480)

    async def test_large_canvas_raises_pixel_ratio(self) -> None:
        document, _ = rendered_canvas("big", [node("a", 0, 0, 10000, 100)], surface_size=(1000, 500))
        result = await ViewportFramer(FAST_CONFIG).frame(document, BBox(0, 0, 10000, 100))
        self.assertEqual(result.pixel_ratio, 11)

    async def test_degenerate_content_does_not_touch_viewport(self) -> None:
        document, _ = rendered_canvas("flat", [node("a", 0, 0, 0, 100)])
        with self.assertRaises(DegenerateGeometryError):
            await ViewportFramer(FAST_CONFIG).frame(document, BBox(0, 0, 0, 100))
        self.assertEqual(document.viewport_history, [])


if __name__ == "__main__":
    unittest.main()
