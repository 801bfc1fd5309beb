"""Background task that purges abandoned chunked uploads."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.filesystem.chunk_store import ChunkStore

logger = logging.getLogger(__name__)


class ChunkJanitor:
    """Periodically removes chunk sets that stopped receiving chunks.

    An upload whose newest chunk is older than ``ttl_seconds`` is considered
    abandoned and its directory is deleted.
    """

    def __init__(self, chunks: ChunkStore, ttl_seconds: float, interval_seconds: float) -> None:
        self.chunks = chunks
        self.ttl_seconds = ttl_seconds
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning("Chunk janitor already running")
            return
        self._task = asyncio.create_task(self._run(), name="chunk-janitor")
        logger.info(
            "Started chunk janitor (ttl=%ss, interval=%ss)", self.ttl_seconds, self.interval_seconds
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped chunk janitor")

    async def run_once(self) -> int:
        """Run one purge pass and return the number of uploads removed."""
        purged = await self.chunks.purge_abandoned(self.ttl_seconds)
        if purged:
            logger.info("Chunk janitor purged %d abandoned uploads", purged)
        return purged

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Chunk janitor pass failed")
