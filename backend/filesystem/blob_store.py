"""Blob storage for finalized uploads on the local filesystem."""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

from backend.exceptions import ValidationFailure

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

READ_BLOCK_SIZE = 1024 * 1024


async def write_stream_atomic(
    target: Path,
    source: AsyncIterable[bytes],
    *,
    max_bytes: int | None = None,
) -> int:
    """Stream ``source`` into ``target`` and return the number of bytes written.

    Bytes land in a hidden sibling file first and are renamed over ``target``
    only once the stream ends, so readers never observe a partial file and a
    rewrite of the same target replaces it atomically. On any failure,
    including cancellation, the partial file is removed before re-raising.

    Raises ValidationFailure (413) as soon as more than ``max_bytes`` arrive.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_name(f".{target.name}.{secrets.token_hex(4)}.partial")
    handle = await asyncio.to_thread(partial.open, "xb")
    written = 0
    try:
        async for block in source:
            if not block:
                continue
            written += len(block)
            if max_bytes is not None and written > max_bytes:
                raise ValidationFailure(
                    f"File exceeds the {max_bytes} byte limit", status_code=413
                )
            await asyncio.to_thread(handle.write, block)
        await asyncio.to_thread(handle.close)
        await asyncio.to_thread(os.replace, partial, target)
    except (Exception, asyncio.CancelledError):
        handle.close()
        try:
            partial.unlink(missing_ok=True)
        except OSError as cleanup_exc:
            logger.error("Failed to remove partial file %s: %s", partial, cleanup_exc)
        raise
    return written


async def iter_file(path: Path, block_size: int = READ_BLOCK_SIZE) -> AsyncIterator[bytes]:
    """Yield the contents of ``path`` in blocks without blocking the event loop."""
    handle = await asyncio.to_thread(path.open, "rb")
    try:
        while True:
            block = await asyncio.to_thread(handle.read, block_size)
            if not block:
                break
            yield block
    finally:
        handle.close()


@dataclass
class BlobStore:
    """Stores upload bytes under their stored name in a flat directory."""

    root: Path

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, stored_name: str) -> Path:
        """Resolve a stored name to a path inside the store.

        Raises ValueError if the resolved path escapes the store root.
        """
        full_path = (self.root / stored_name).resolve()
        root = self.root.resolve()
        if full_path.parent != root:
            raise ValueError(f"Path traversal detected: {stored_name}")
        return full_path

    def exists(self, stored_name: str) -> bool:
        try:
            return self.path_for(stored_name).is_file()
        except ValueError:
            return False

    async def write(
        self,
        stored_name: str,
        source: AsyncIterable[bytes],
        *,
        max_bytes: int | None = None,
    ) -> int:
        """Persist a byte stream under ``stored_name``. Returns the size in bytes."""
        return await write_stream_atomic(self.path_for(stored_name), source, max_bytes=max_bytes)

    def read(self, stored_name: str) -> AsyncIterator[bytes]:
        return iter_file(self.path_for(stored_name))

    async def delete(self, stored_name: str) -> bool:
        """Delete a blob. Returns True if it existed."""
        full_path = self.path_for(stored_name)
        if not full_path.exists():
            return False
        await asyncio.to_thread(full_path.unlink)
        return True

    async def discard(self, stored_name: str) -> None:
        """Best-effort delete used on failure paths: errors are logged, never raised."""
        try:
            await self.delete(stored_name)
        except (OSError, ValueError) as exc:
            logger.error("Failed to clean up blob %s: %s", stored_name, exc)
