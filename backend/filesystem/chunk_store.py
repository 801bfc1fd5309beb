"""Transient storage for chunked uploads.

Each logical upload is identified by a ``ChunkKey`` and owns one directory.
Chunk ``i`` always lives at ``<dir>/<i:06d>.part``: completeness and merge
order are computed by probing ``0..total_chunks-1``, never from directory
listing order or file timestamps.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from backend.filesystem.blob_store import iter_file, write_stream_atomic

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

_CHUNK_NAME_RE = re.compile(r"^(\d{6})\.part$")


@dataclass(frozen=True)
class ChunkKey:
    """Identity of one logical chunked upload."""

    device_id: str
    original_name: str
    total_chunks: int

    @property
    def digest(self) -> str:
        raw = f"{self.device_id}\x00{self.original_name}\x00{self.total_chunks}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


@dataclass
class ChunkSet:
    """Snapshot of the chunks received so far for one ``ChunkKey``."""

    key: ChunkKey
    directory: Path
    received: dict[int, Path] = field(default_factory=dict)
    sizes: dict[int, int] = field(default_factory=dict)

    @property
    def missing(self) -> list[int]:
        return [i for i in range(self.key.total_chunks) if i not in self.received]

    @property
    def is_complete(self) -> bool:
        return len(self.received) == self.key.total_chunks

    @property
    def size_bytes(self) -> int:
        return sum(self.sizes.values())

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Concatenate chunks in index order."""
        for index in range(self.key.total_chunks):
            async for block in iter_file(self.received[index]):
                yield block


@dataclass
class ChunkStore:
    """Index-addressed chunk area rooted at ``root``."""

    root: Path

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def directory_for(self, key: ChunkKey) -> Path:
        return self.root / key.digest

    def chunk_path(self, key: ChunkKey, index: int) -> Path:
        if not 0 <= index < key.total_chunks:
            raise ValueError(f"Chunk index {index} outside 0..{key.total_chunks - 1}")
        return self.directory_for(key) / f"{index:06d}.part"

    async def put(
        self,
        key: ChunkKey,
        index: int,
        source: AsyncIterable[bytes],
        *,
        max_bytes: int | None = None,
    ) -> int:
        """Store one chunk, replacing any earlier copy of the same index."""
        return await write_stream_atomic(
            self.chunk_path(key, index), source, max_bytes=max_bytes
        )

    def snapshot(self, key: ChunkKey) -> ChunkSet:
        """Scan the upload's directory once and record which indices are present.

        Only ``NNNNNN.part`` entries inside ``0..total_chunks-1`` count; temp
        files and stray names are ignored.
        """
        directory = self.directory_for(key)
        chunk_set = ChunkSet(key=key, directory=directory)
        try:
            entries = os.scandir(directory)
        except (FileNotFoundError, NotADirectoryError):
            return chunk_set
        with entries:
            for entry in entries:
                match = _CHUNK_NAME_RE.match(entry.name)
                if match is None:
                    continue
                index = int(match.group(1))
                if index >= key.total_chunks:
                    continue
                try:
                    if not entry.is_file():
                        continue
                    size = entry.stat().st_size
                except FileNotFoundError:
                    continue
                chunk_set.received[index] = directory / entry.name
                chunk_set.sizes[index] = size
        return chunk_set

    async def load(self, key: ChunkKey) -> ChunkSet:
        """``snapshot`` off the event loop."""
        return await asyncio.to_thread(self.snapshot, key)

    async def purge(self, key: ChunkKey) -> None:
        """Remove all chunks of one upload. Errors are logged, never raised."""
        directory = self.directory_for(key)
        try:
            await asyncio.to_thread(shutil.rmtree, directory)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.error("Failed to purge chunk directory %s: %s", directory, exc)

    async def purge_abandoned(self, max_age_seconds: float, now: float | None = None) -> int:
        """Remove upload directories untouched for longer than ``max_age_seconds``.

        A directory's age is the newest modification time among it and its chunks,
        so an upload that is still receiving chunks is never purged.
        """
        if not self.root.is_dir():
            return 0
        cutoff = (now if now is not None else time.time()) - max_age_seconds
        purged = 0
        for directory in self.root.iterdir():
            if not directory.is_dir():
                continue
            try:
                last_activity = max(
                    [directory.stat().st_mtime]
                    + [entry.stat().st_mtime for entry in directory.iterdir()]
                )
            except OSError as exc:
                logger.warning("Skipping chunk directory %s: %s", directory, exc)
                continue
            if last_activity >= cutoff:
                continue
            try:
                await asyncio.to_thread(shutil.rmtree, directory)
                purged += 1
                logger.info("Purged abandoned chunk upload %s", directory.name)
            except OSError as exc:
                logger.error("Failed to purge abandoned chunk directory %s: %s", directory, exc)
        return purged
