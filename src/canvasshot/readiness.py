"""Wait for canvas nodes to finish mounting before capture."""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from .config import ExportConfig
from .host import CanvasNode

logger = logging.getLogger(__name__)


def unready_nodes(nodes: Sequence[CanvasNode]) -> List[CanvasNode]:
    return [node for node in nodes if not node.initialized or not node.content_mounted]


class RenderReadinessWaiter:
    """Polls node mount state until every node is ready or ``max_wait_ms`` passes.

    Never raises; the caller decides what a non-empty result means.
    """

    def __init__(self, config: Optional[ExportConfig] = None) -> None:
        self.config = config or ExportConfig()

    async def wait(self, nodes: Sequence[CanvasNode]) -> List[CanvasNode]:
        loop = asyncio.get_running_loop()
        interval = self.config.poll_interval_ms / 1000
        deadline = loop.time() + self.config.max_wait_ms / 1000
        pending = unready_nodes(nodes)
        while pending and loop.time() < deadline:
            await asyncio.sleep(min(interval, max(deadline - loop.time(), 0.0)))
            pending = unready_nodes(nodes)
            logger.debug("waiting for %d nodes to finish loading", len(pending))

        if pending:
            logger.warning(
                "%d canvas nodes did not finish loading within %.0fms",
                len(pending),
                self.config.max_wait_ms,
            )
        else:
            logger.debug("all canvas nodes loaded")
        return pending
