"""Download gateway: resolve, authorize and count downloads."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from backend.exceptions import NotFound, Unauthorized
from backend.filesystem.blob_store import iter_file
from backend.models.file import SharedFile
from backend.services.access_service import AccessDecision, check_access
from backend.services.keyed_lock import KeyedLock
from backend.services.naming_service import is_valid_stored_name

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.filesystem.blob_store import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class ServedFile:
    """A granted download: the record, where its bytes live, and the updated count."""

    record: SharedFile
    path: Path
    download_count: int

    def iter_bytes(self) -> AsyncIterator[bytes]:
        return iter_file(self.path)


class DownloadGateway:
    """Resolves stored names to files and keeps download counters exact."""

    def __init__(self, blobs: BlobStore) -> None:
        self.blobs = blobs
        self._counters = KeyedLock()

    async def find(self, session: AsyncSession, stored_name: str) -> SharedFile | None:
        if not is_valid_stored_name(stored_name):
            return None
        result = await session.execute(
            select(SharedFile).where(SharedFile.stored_name == stored_name)
        )
        return result.scalar_one_or_none()

    async def resolve(self, session: AsyncSession, stored_name: str) -> SharedFile:
        """Return the file record, or raise NotFound if the row or its bytes are missing."""
        record = await self.find(session, stored_name)
        if record is None:
            raise NotFound("File not found")
        if not self.blobs.exists(stored_name):
            logger.warning("Metadata for %s exists but its blob is missing", stored_name)
            raise NotFound("File not found")
        return record

    def authorize(self, record: SharedFile, supplied_password: str | None) -> AccessDecision:
        return check_access(record.password_hash, supplied_password)

    async def record_download(self, session: AsyncSession, stored_name: str) -> int:
        """Increment the download counter and return the new value.

        The increment is a single SQL ``UPDATE``, so concurrent downloads of
        the same file never lose an update; the per-name lock keeps writers of
        one counter from contending for the database write lock.
        """
        async with self._counters.hold(stored_name):
            await session.execute(
                update(SharedFile)
                .where(SharedFile.stored_name == stored_name)
                .values(download_count=SharedFile.download_count + 1)
            )
            result = await session.execute(
                select(SharedFile.download_count).where(SharedFile.stored_name == stored_name)
            )
            count = result.scalar_one_or_none()
            await session.commit()
        if count is None:
            raise NotFound("File not found")
        return int(count)

    async def serve(
        self,
        session: AsyncSession,
        stored_name: str,
        supplied_password: str | None = None,
    ) -> ServedFile:
        """Resolve, authorize and count one download.

        Nothing is counted unless the file exists and access is granted.
        """
        record = await self.resolve(session, stored_name)
        decision = await asyncio.to_thread(self.authorize, record, supplied_password)
        if decision is AccessDecision.DENIED:
            message = "Incorrect password" if supplied_password else "Password required"
            raise Unauthorized(message)
        count = await self.record_download(session, stored_name)
        return ServedFile(
            record=record, path=self.blobs.path_for(stored_name), download_count=count
        )
