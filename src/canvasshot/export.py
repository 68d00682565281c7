"""Export a live canvas document to a PNG, restoring the host view afterwards."""
from __future__ import annotations

import asyncio
import base64
import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .bounds import BoundingBoxCalculator
from .config import ExportConfig
from .element_filter import ElementFilter
from .errors import (
    CanvasExportError,
    CaptureFailedError,
    ExportBusyError,
    InvalidTargetError,
    RenderTimeoutError,
)
from .framing import FrameResult, ViewportFramer
from .host import (
    CANVAS_KIND,
    CanvasDocument,
    CaptureOptions,
    DocumentRegistry,
    InteractionGuard,
    Viewport,
)
from .readiness import RenderReadinessWaiter

logger = logging.getLogger(__name__)

PNG_MIME_TYPE = "image/png"


class ExportState(enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    FRAMING = "framing"
    WAITING_READY = "waiting_ready"
    CAPTURING = "capturing"
    RESTORING = "restoring"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ExportSession:
    """Per-export snapshot of everything the export mutates on the document."""

    document: CanvasDocument
    original_viewport: Optional[Viewport] = None
    original_selection: frozenset = frozenset()
    background_color: str = ""
    exporting: bool = False
    presentation: bool = False
    guard: Optional[InteractionGuard] = None
    state: ExportState = ExportState.IDLE
    history: List[ExportState] = field(default_factory=lambda: [ExportState.IDLE])

    def transition(self, state: ExportState) -> None:
        logger.debug("export %s: %s -> %s", self.document.id, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def set_export_flags(self, exporting: bool) -> None:
        self.exporting = exporting
        self.presentation = exporting
        self.document.set_export_flags(exporting=exporting, presentation=exporting)


@dataclass(frozen=True)
class ExportResult:
    document_id: str
    image_bytes: bytes
    frame: FrameResult
    state: ExportState = ExportState.DONE
    mime_type: str = PNG_MIME_TYPE

    def to_payload(self) -> Dict[str, str]:
        return {
            "image": base64.b64encode(self.image_bytes).decode("ascii"),
            "mimeType": self.mime_type,
        }


def validate_target(document: Optional[CanvasDocument], document_id: str = "") -> CanvasDocument:
    if document is None:
        raise InvalidTargetError(f"canvas document not found: {document_id}")
    if document.kind != CANVAS_KIND:
        raise InvalidTargetError(f"document is not a canvas: {document.id} ({document.kind})")
    if not document.nodes:
        raise InvalidTargetError(f"canvas has no nodes to capture: {document.id}")
    if document.surface is None:
        raise InvalidTargetError(f"canvas is not rendered: {document.id}")
    dangling = [
        edge.id
        for edge in document.edges.values()
        if edge.source_id not in document.nodes or edge.target_id not in document.nodes
    ]
    if dangling:
        raise InvalidTargetError(
            f"edges reference missing nodes in {document.id}: {', '.join(sorted(dangling))}"
        )
    return document


class ExportOrchestrator:
    """Runs one export per document at a time.

    A second request for a document that is already exporting is rejected
    with ``ExportBusyError``; different documents may export concurrently.
    """

    def __init__(
        self,
        config: Optional[ExportConfig] = None,
        *,
        calculator: Optional[BoundingBoxCalculator] = None,
        framer: Optional[ViewportFramer] = None,
        waiter: Optional[RenderReadinessWaiter] = None,
    ) -> None:
        self.config = config or ExportConfig()
        self.calculator = calculator or BoundingBoxCalculator()
        self.framer = framer or ViewportFramer(self.config)
        self.waiter = waiter or RenderReadinessWaiter(self.config)
        self.last_session: Optional[ExportSession] = None
        self._in_flight: Set[str] = set()

    def is_exporting(self, document_id: str) -> bool:
        return document_id in self._in_flight

    async def export(self, document: CanvasDocument) -> ExportResult:
        document = validate_target(document)
        if document.id in self._in_flight:
            raise ExportBusyError(f"an export of {document.id} is already in progress")

        session = ExportSession(document)
        self.last_session = session
        self._in_flight.add(document.id)
        try:
            try:
                self._prepare(session)
                frame = await self._frame(session)
                await self._wait_ready(session)
                image = await self._capture(session, frame)
            finally:
                session.transition(ExportState.RESTORING)
                self._restore(session)
        except Exception as exc:
            session.transition(ExportState.FAILED)
            logger.error("canvas export of %s failed: %s", document.id, exc)
            raise
        finally:
            self._in_flight.discard(document.id)

        session.transition(ExportState.DONE)
        logger.info("canvas %s captured (%d bytes)", document.id, len(image))
        return ExportResult(document_id=document.id, image_bytes=image, frame=frame)

    def _prepare(self, session: ExportSession) -> None:
        session.transition(ExportState.PREPARING)
        document = session.document
        # Read before export styling is applied.
        session.background_color = document.surface.get_computed_background_color()
        session.original_selection = frozenset(document.get_selection())
        session.original_viewport = document.get_viewport()
        session.guard = document.install_interaction_guard()
        session.set_export_flags(True)
        document.set_selection(())

    async def _frame(self, session: ExportSession) -> FrameResult:
        session.transition(ExportState.FRAMING)
        document = session.document
        nodes = list(document.nodes.values())
        edges = list(document.edges.values())
        content = self.calculator.calculate(nodes, edges)
        return await self.framer.frame(document, content)

    async def _wait_ready(self, session: ExportSession) -> None:
        session.transition(ExportState.WAITING_READY)
        pending = await self.waiter.wait(list(session.document.nodes.values()))
        if pending:
            raise RenderTimeoutError(
                "export cancelled: nodes did not finish loading in time",
                [node.id for node in pending],
            )

    async def _capture(self, session: ExportSession, frame: FrameResult) -> bytes:
        session.transition(ExportState.CAPTURING)
        document = session.document
        surface = document.surface
        element_filter = ElementFilter.for_document(
            document.nodes.values(), document.edges.values()
        )
        options = CaptureOptions(
            root=surface.root,
            pixel_ratio=frame.pixel_ratio,
            width=frame.width,
            height=frame.height,
            background_color=session.background_color,
            filter=element_filter,
        )
        try:
            image = await surface.capture_subtree(options)
        except CanvasExportError:
            raise
        except Exception as exc:
            raise CaptureFailedError(f"failed to capture canvas: {exc}") from exc
        if not image:
            raise CaptureFailedError("rasterizer returned no image data")
        return bytes(image)

    def _restore(self, session: ExportSession) -> None:
        # Each step runs even if an earlier one fails.
        document = session.document
        if session.exporting:
            try:
                session.set_export_flags(False)
            except Exception:
                logger.exception("failed to clear export flags on %s", document.id)
        if session.guard is not None:
            try:
                session.guard.remove()
            except Exception:
                logger.exception("failed to remove interaction guard on %s", document.id)
            session.guard = None
        if session.original_viewport is not None:
            try:
                document.set_selection(session.original_selection)
            except Exception:
                logger.exception("failed to restore selection on %s", document.id)
            try:
                if document.get_viewport() != session.original_viewport:
                    document.set_viewport(session.original_viewport)
            except Exception:
                logger.exception("failed to restore viewport on %s", document.id)


_default_orchestrator: Optional[ExportOrchestrator] = None


def default_orchestrator() -> ExportOrchestrator:
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = ExportOrchestrator(ExportConfig.from_env())
    return _default_orchestrator


async def capture_canvas(
    registry: DocumentRegistry,
    target_document_id: str,
    settle_timeout_ms: Optional[float] = None,
    *,
    orchestrator: Optional[ExportOrchestrator] = None,
) -> ExportResult:
    """Open ``target_document_id`` if needed, let it settle, then export it."""
    orchestrator = orchestrator or default_orchestrator()
    if settle_timeout_ms is None:
        settle_timeout_ms = orchestrator.config.default_settle_timeout_ms
    if settle_timeout_ms < 0:
        raise ValueError("settle timeout must be >= 0")

    document = registry.find(target_document_id)
    if document is None:
        logger.debug("opening canvas %s", target_document_id)
        document = await registry.open(target_document_id)
    document = validate_target(document, target_document_id)
    if orchestrator.is_exporting(document.id):
        raise ExportBusyError(f"an export of {document.id} is already in progress")

    await asyncio.sleep(settle_timeout_ms / 1000)
    logger.debug(
        "canvas ready: %d nodes, %d edges", len(document.nodes), len(document.edges)
    )
    return await orchestrator.export(document)
