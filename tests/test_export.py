from __future__ import annotations

import asyncio
import base64
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from _fixtures import FAST_CONFIG, edge, node, png_size, rendered_canvas

from canvasshot.config import ExportConfig
from canvasshot.errors import (
    CaptureFailedError,
    DegenerateGeometryError,
    ExportBusyError,
    InvalidTargetError,
    RenderTimeoutError,
)
from canvasshot.export import ExportOrchestrator, ExportState, capture_canvas
from canvasshot.host import Viewport
from canvasshot.jsoncanvas import HeadlessCanvas, HeadlessRegistry

# Allowance for event-loop scheduling jitter on busy machines.
JITTER = 0.1


class ExportOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    def _labeled_pair(self, **kwargs):
        return rendered_canvas(
            "pair.canvas",
            [node("a", 0, 0, 200, 100, text="Alpha"), node("b", 500, 250, 200, 100, text="Beta")],
            [edge("ab", "a", "b", label="depends on")],
            **kwargs,
        )

    def _snapshot(self, document: HeadlessCanvas):
        return document.get_viewport(), document.get_selection(), document.screenshotting, set(document.classes)

    async def test_end_to_end_labeled_edge(self) -> None:
        document, registry = self._labeled_pair()
        document.set_viewport(Viewport(12.0, -40.0, 0.5))
        document.set_selection({"a"})
        before = self._snapshot(document)
        orchestrator = ExportOrchestrator(FAST_CONFIG)

        result = await orchestrator.export(document)

        self.assertEqual(result.state, ExportState.DONE)
        self.assertEqual(result.mime_type, "image/png")
        self.assertTrue(result.image_bytes)
        width, height = png_size(result.image_bytes)
        self.assertAlmostEqual(result.frame.width / result.frame.height, 1200 / 800)
        self.assertAlmostEqual(width / height, 1200 / 800, places=2)
        self.assertEqual(self._snapshot(document), before)
        self.assertEqual(document.get_viewport(), Viewport(12.0, -40.0, 0.5))
        self.assertNotIn("progress-bar-container", [c for el in registry.body.children for c in el.classes])
        self.assertEqual(
            orchestrator.last_session.history,
            [
                ExportState.IDLE,
                ExportState.PREPARING,
                ExportState.FRAMING,
                ExportState.WAITING_READY,
                ExportState.CAPTURING,
                ExportState.RESTORING,
                ExportState.DONE,
            ],
        )
        payload = result.to_payload()
        self.assertEqual(payload["mimeType"], "image/png")
        self.assertEqual(base64.b64decode(payload["image"]), result.image_bytes)

    async def test_export_mode_is_visible_during_capture(self) -> None:
        document, registry = self._labeled_pair()
        seen = {}
        original_capture = document.surface.capture_subtree

        async def spy(options):
            seen["screenshotting"] = document.screenshotting
            seen["classes"] = set(document.classes)
            seen["selection"] = document.get_selection()
            seen["blockers"] = [el for el in registry.body.children if "progress-bar-container" in el.classes]
            seen["background"] = options.background_color
            return await original_capture(options)

        document.set_selection({"a", "b"})
        document.surface.capture_subtree = spy
        await ExportOrchestrator(FAST_CONFIG).export(document)

        self.assertTrue(seen["screenshotting"])
        self.assertIn("is-exporting", seen["classes"])
        self.assertEqual(seen["selection"], frozenset())
        self.assertEqual(len(seen["blockers"]), 1)
        self.assertEqual(seen["background"], "#ffffff")
        self.assertFalse(document.screenshotting)
        self.assertEqual(document.get_selection(), frozenset({"a", "b"}))

    async def test_zero_nodes_is_invalid_target_without_mutation(self) -> None:
        document, _ = rendered_canvas("empty.canvas", [])
        before = document.get_viewport()
        with self.assertRaises(InvalidTargetError):
            await ExportOrchestrator(FAST_CONFIG).export(document)
        self.assertEqual(document.get_viewport(), before)
        self.assertEqual(document.viewport_history, [])
        self.assertFalse(document.screenshotting)

    async def test_non_canvas_and_missing_documents_are_invalid(self) -> None:
        orchestrator = ExportOrchestrator(FAST_CONFIG)
        with self.assertRaises(InvalidTargetError):
            await orchestrator.export(None)
        note = HeadlessCanvas("note.md", [node("a", 0, 0)], [], kind="markdown")
        with self.assertRaises(InvalidTargetError):
            await orchestrator.export(note)

    async def test_render_timeout_restores_state(self) -> None:
        config = ExportConfig(max_wait_ms=150, poll_interval_ms=10)
        document, registry = rendered_canvas("stuck.canvas", [node("a", 0, 0, ready=False)])
        document.set_viewport(Viewport(3.0, 4.0, -1.0))
        document.set_selection({"a"})
        before = self._snapshot(document)
        capture = mock.AsyncMock(return_value=b"never")
        document.surface.capture_subtree = capture

        loop = asyncio.get_running_loop()
        start = loop.time()
        orchestrator = ExportOrchestrator(config)
        with self.assertRaises(RenderTimeoutError) as ctx:
            await orchestrator.export(document)
        elapsed = loop.time() - start

        self.assertEqual(ctx.exception.unready_node_ids, ["a"])
        self.assertIn("did not finish loading", str(ctx.exception))
        settle = 2 * config.settle_delay_ms / 1000
        self.assertGreaterEqual(elapsed, 0.15)
        self.assertLess(elapsed, 0.15 + 0.01 + settle + JITTER)
        capture.assert_not_called()
        self.assertEqual(self._snapshot(document), before)
        self.assertEqual(orchestrator.last_session.history[-2:], [ExportState.RESTORING, ExportState.FAILED])
        self.assertFalse(any("progress-bar-container" in el.classes for el in registry.body.children))

    async def test_capture_failure_restores_state(self) -> None:
        document, registry = self._labeled_pair()
        document.set_selection({"b"})
        before = self._snapshot(document)
        document.surface.capture_subtree = mock.AsyncMock(side_effect=RuntimeError("unsupported element"))

        with self.assertRaises(CaptureFailedError) as ctx:
            await ExportOrchestrator(FAST_CONFIG).export(document)

        self.assertIn("unsupported element", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertEqual(self._snapshot(document), before)
        self.assertFalse(any("progress-bar-container" in el.classes for el in registry.body.children))

    async def test_failing_guard_removal_still_restores_view(self) -> None:
        document, _ = self._labeled_pair()
        document.set_selection({"a"})
        viewport_before = document.get_viewport()
        guard = mock.Mock()
        guard.remove.side_effect = RuntimeError("guard already detached")

        with mock.patch.object(document, "install_interaction_guard", return_value=guard):
            with self.assertLogs("canvasshot.export", level="ERROR") as logs:
                result = await ExportOrchestrator(FAST_CONFIG).export(document)

        self.assertEqual(result.state, ExportState.DONE)
        guard.remove.assert_called_once_with()
        self.assertEqual(document.get_viewport(), viewport_before)
        self.assertEqual(document.get_selection(), frozenset({"a"}))
        self.assertFalse(document.screenshotting)
        self.assertTrue(any("interaction guard" in line for line in logs.output))

    async def test_empty_image_is_capture_failure(self) -> None:
        document, _ = self._labeled_pair()
        document.surface.capture_subtree = mock.AsyncMock(return_value=b"")
        with self.assertRaises(CaptureFailedError):
            await ExportOrchestrator(FAST_CONFIG).export(document)

    async def test_degenerate_geometry_restores_state(self) -> None:
        document, _ = rendered_canvas("line.canvas", [node("a", 0, 0, 0, 50), node("b", 0, 100, 0, 50)])
        document.set_selection({"a"})
        before = self._snapshot(document)
        with self.assertRaises(DegenerateGeometryError):
            await ExportOrchestrator(FAST_CONFIG).export(document)
        self.assertEqual(document.viewport_history, [])
        self.assertEqual(self._snapshot(document), before)

    async def test_dangling_edge_is_invalid_target(self) -> None:
        document, _ = rendered_canvas("dangling.canvas", [node("a", 0, 0), node("b", 200, 0)], [edge("e", "a", "b")])
        document.edges["e"].target_id = "gone"
        with self.assertRaises(InvalidTargetError):
            await ExportOrchestrator(FAST_CONFIG).export(document)

    async def test_second_export_of_same_document_is_rejected(self) -> None:
        document, _ = rendered_canvas("busy.canvas", [node("a", 0, 0, ready=False)])
        other, _ = rendered_canvas("other.canvas", [node("x", 0, 0)])
        orchestrator = ExportOrchestrator(ExportConfig(max_wait_ms=5000))
        first = asyncio.create_task(orchestrator.export(document))
        await asyncio.sleep(0.05)
        self.assertTrue(orchestrator.is_exporting("busy.canvas"))

        with self.assertRaises(ExportBusyError):
            await orchestrator.export(document)
        other_result = await orchestrator.export(other)
        self.assertEqual(other_result.state, ExportState.DONE)

        document.nodes["a"].initialized = True
        document.nodes["a"].content_mounted = True
        result = await first
        self.assertEqual(result.state, ExportState.DONE)
        self.assertFalse(orchestrator.is_exporting("busy.canvas"))


class CaptureCanvasTests(unittest.IsolatedAsyncioTestCase):
    async def test_opens_canvas_file_and_waits_for_mount(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "notes").mkdir()
            (root / "notes" / "idea.md").write_text("# Idea\nSomething worth drawing.")
            (root / "board.canvas").write_text(
                json.dumps(
                    {
                        "nodes": [
                            {"id": "t", "type": "text", "x": 0, "y": 0, "width": 250, "height": 60, "text": "Start"},
                            {"id": "f", "type": "file", "x": 400, "y": 0, "width": 300, "height": 200, "file": "notes/idea.md"},
                        ],
                        "edges": [{"id": "e", "fromNode": "t", "toNode": "f", "label": "expands"}],
                    }
                )
            )
            registry = HeadlessRegistry(root, surface_size=(800, 600))
            result = await capture_canvas(
                registry, "board.canvas", 0, orchestrator=ExportOrchestrator(FAST_CONFIG)
            )
            document = registry.find("board.canvas")

        self.assertEqual(result.state, ExportState.DONE)
        self.assertEqual(png_size(result.image_bytes), (800, 600))
        self.assertTrue(document.nodes["f"].text.startswith("# Idea"))
        self.assertEqual(registry.document_ids(), ["board.canvas"])

    async def test_concurrent_captures_of_unopened_canvas_open_it_once(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "shared.canvas").write_text(
                json.dumps(
                    {
                        "nodes": [
                            {"id": "a", "type": "text", "x": 0, "y": 0, "width": 200, "height": 80, "text": "A"},
                            {"id": "b", "type": "text", "x": 300, "y": 0, "width": 200, "height": 80, "text": "B"},
                        ],
                        "edges": [],
                    }
                )
            )
            registry = HeadlessRegistry(root, surface_size=(400, 300))
            orchestrator = ExportOrchestrator(FAST_CONFIG)
            outcomes = await asyncio.gather(
                capture_canvas(registry, "shared.canvas", 0, orchestrator=orchestrator),
                capture_canvas(registry, "shared.canvas", 0, orchestrator=orchestrator),
                return_exceptions=True,
            )

        done = [o for o in outcomes if not isinstance(o, BaseException)]
        self.assertGreaterEqual(len(done), 1)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                self.assertIsInstance(outcome, ExportBusyError)
            else:
                self.assertEqual(outcome.state, ExportState.DONE)
        self.assertEqual(registry.document_ids(), ["shared.canvas"])
        self.assertFalse(orchestrator.is_exporting("shared.canvas"))

    async def test_missing_document_is_invalid_target(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            registry = HeadlessRegistry(Path(td))
            with self.assertRaises(InvalidTargetError):
                await capture_canvas(registry, "nope.canvas", 0, orchestrator=ExportOrchestrator(FAST_CONFIG))

    async def test_non_canvas_file_is_invalid_target(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "note.md").write_text("hello")
            registry = HeadlessRegistry(Path(td))
            with self.assertRaises(InvalidTargetError):
                await capture_canvas(registry, "note.md", 0, orchestrator=ExportOrchestrator(FAST_CONFIG))

    async def test_negative_settle_timeout_is_rejected(self) -> None:
        document, registry = rendered_canvas("a.canvas", [node("a", 0, 0)])
        with self.assertRaises(ValueError):
            await capture_canvas(registry, document.id, -1, orchestrator=ExportOrchestrator(FAST_CONFIG))


if __name__ == "__main__":
    unittest.main()
