"""Upload coordinator: single-shot and chunked uploads into one SharedFile."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from backend.exceptions import (
    FileShareError,
    IncompleteUpload,
    ServiceUnavailable,
    StorageFailure,
    ValidationFailure,
)
from backend.filesystem.chunk_store import ChunkKey
from backend.models.file import SharedFile
from backend.services.access_service import hash_password
from backend.services.datetime_service import format_iso, now_utc
from backend.services.keyed_lock import SingleFlight
from backend.services.naming_service import display_name, generate_stored_name, split_extension

if TYPE_CHECKING:
    from collections.abc import AsyncIterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.config import Settings
    from backend.filesystem.blob_store import BlobStore
    from backend.filesystem.chunk_store import ChunkStore
    from backend.services.history_service import DeviceHistoryLedger

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"
MAX_NAME_LENGTH = 255


@dataclass(frozen=True)
class UploadPolicy:
    """Size and type limits applied to every upload."""

    max_upload_size: int
    max_chunk_size: int
    max_chunks: int
    allowed_extensions: frozenset[str]
    allowed_mime_types: tuple[str, ...]

    @classmethod
    def from_settings(cls, settings: Settings) -> UploadPolicy:
        return cls(
            max_upload_size=settings.max_upload_size,
            max_chunk_size=settings.max_chunk_size,
            max_chunks=settings.max_chunks,
            allowed_extensions=frozenset(
                ext.lower().lstrip(".") for ext in settings.allowed_extensions
            ),
            allowed_mime_types=tuple(mime.lower() for mime in settings.allowed_mime_types),
        )

    def is_type_allowed(self, name: str, mime_type: str | None) -> bool:
        """Accept when EITHER the extension OR the MIME type is on the allow-list.

        Browsers and phones often send ``application/octet-stream`` or no
        extension at all, so neither signal alone is reliable.
        """
        _, ext = split_extension(name)
        if ext and ext in self.allowed_extensions:
            return True
        if not mime_type:
            return False
        mime = mime_type.split(";", 1)[0].strip().lower()
        for pattern in self.allowed_mime_types:
            if pattern.endswith("/*"):
                if mime.startswith(pattern[:-1]):
                    return True
            elif mime == pattern:
                return True
        return False


@dataclass(frozen=True)
class ChunkAck:
    chunk_index: int
    received: int
    total_chunks: int
    complete: bool


def resolve_mime_type(name: str, declared: str | None) -> str:
    """Prefer the client's MIME type unless it is missing or generic."""
    if declared and declared.split(";", 1)[0].strip() != DEFAULT_MIME_TYPE:
        return declared.split(";", 1)[0].strip()
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_MIME_TYPE


class UploadCoordinator:
    """Turns raw upload input into exactly one ``SharedFile`` or fails cleanly.

    No failure leaves a blob without a metadata row, a metadata row without
    a blob, or a history entry for a file that was not created.
    """

    def __init__(
        self,
        blobs: BlobStore,
        chunks: ChunkStore,
        ledger: DeviceHistoryLedger,
        policy: UploadPolicy,
    ) -> None:
        self.blobs = blobs
        self.chunks = chunks
        self.ledger = ledger
        self.policy = policy
        self._merges: SingleFlight[SharedFile] = SingleFlight()

    # -- validation ---------------------------------------------------------

    def _validate_name(self, declared_name: str | None) -> str:
        name = display_name(declared_name or "")
        if not name or name in {".", ".."}:
            raise ValidationFailure("No file name provided")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationFailure(f"File name exceeds {MAX_NAME_LENGTH} characters")
        return name

    def _validate_type(self, name: str, mime_type: str | None) -> None:
        if not self.policy.is_type_allowed(name, mime_type):
            raise ValidationFailure("File type not supported! Please upload a valid file.")

    def _validate_size(self, size: int | None) -> None:
        if size is not None and size > self.policy.max_upload_size:
            raise ValidationFailure(
                f"File exceeds the {self.policy.max_upload_size} byte limit", status_code=413
            )

    def _validate_chunk_params(self, chunk_index: int, total_chunks: int) -> None:
        if total_chunks < 1:
            raise ValidationFailure("total_chunks must be at least 1")
        if total_chunks > self.policy.max_chunks:
            raise ValidationFailure(f"total_chunks must not exceed {self.policy.max_chunks}")
        if not 0 <= chunk_index < total_chunks:
            raise ValidationFailure(f"chunk_index must be between 0 and {total_chunks - 1}")

    # -- single-shot --------------------------------------------------------

    async def receive_single_upload(
        self,
        session: AsyncSession,
        source: AsyncIterable[bytes],
        declared_name: str | None,
        mime_type: str | None,
        *,
        device_id: str | None = None,
        password: str | None = None,
        declared_size: int | None = None,
    ) -> SharedFile:
        """Persist one uploaded stream and its metadata; record it in the device history."""
        name = self._validate_name(declared_name)
        self._validate_type(name, mime_type)
        self._validate_size(declared_size)
        password_hash = await asyncio.to_thread(hash_password, password) if password else None
        return await self._finalize(
            session,
            source,
            name=name,
            mime_type=resolve_mime_type(name, mime_type),
            device_id=device_id,
            password_hash=password_hash,
        )

    async def _finalize(
        self,
        session: AsyncSession,
        source: AsyncIterable[bytes],
        *,
        name: str,
        mime_type: str,
        device_id: str | None,
        password_hash: str | None,
    ) -> SharedFile:
        stored_name = generate_stored_name(name)
        try:
            size = await self.blobs.write(
                stored_name, source, max_bytes=self.policy.max_upload_size
            )
        except OSError as exc:
            logger.error("Failed to write upload %s: %s", stored_name, exc)
            raise StorageFailure("Failed to store uploaded file") from exc

        try:
            record = await self._create_record(
                session,
                stored_name=stored_name,
                name=name,
                size=size,
                mime_type=mime_type,
                device_id=device_id,
                password_hash=password_hash,
            )
        except (Exception, asyncio.CancelledError) as exc:
            await self._rollback_quietly(session)
            await self.blobs.discard(stored_name)
            if isinstance(exc, (OperationalError, PoolTimeoutError)):
                logger.error("Metadata store unavailable while saving %s: %s", stored_name, exc)
                raise ServiceUnavailable("File metadata store is unavailable") from exc
            if isinstance(exc, (asyncio.CancelledError, FileShareError)):
                raise
            logger.error("Failed to save metadata for %s: %s", stored_name, exc)
            raise StorageFailure("Failed to save file metadata") from exc

        logger.info(
            "Stored %s as %s (%d bytes, device=%s)", name, stored_name, size, device_id or "-"
        )
        return record

    async def _create_record(
        self,
        session: AsyncSession,
        *,
        stored_name: str,
        name: str,
        size: int,
        mime_type: str,
        device_id: str | None,
        password_hash: str | None,
    ) -> SharedFile:
        record = SharedFile(
            stored_name=stored_name,
            original_name=name,
            size_bytes=size,
            mime_type=mime_type,
            download_count=0,
            uploaded_at=format_iso(now_utc()),
            password_hash=password_hash,
        )
        if device_id is None:
            session.add(record)
            await session.commit()
            return record

        # The device lock is taken before the first write so the history
        # read-modify-write and the file insert commit together.
        async with self.ledger.locked(device_id):
            session.add(record)
            await session.flush()
            await self.ledger.stage_many(session, device_id, [record.id])
            await session.commit()
        return record

    async def _rollback_quietly(self, session: AsyncSession) -> None:
        try:
            await session.rollback()
        except SQLAlchemyError as exc:
            logger.error("Rollback failed after upload error: %s", exc)

    # -- chunked ------------------------------------------------------------

    async def receive_chunk(
        self,
        source: AsyncIterable[bytes],
        chunk_index: int,
        total_chunks: int,
        original_name: str | None,
        device_id: str | None = None,
        *,
        mime_type: str | None = None,
        declared_size: int | None = None,
    ) -> ChunkAck:
        """Store one chunk of a logical upload. Re-sending an index overwrites it.

        The chunks received so far may not add up to more than ``max_upload_size``;
        an upload that does is purged and rejected with 413.
        """
        self._validate_chunk_params(chunk_index, total_chunks)
        name = self._validate_name(original_name)
        self._validate_type(name, mime_type or mimetypes.guess_type(name)[0])
        if declared_size is not None and declared_size > self.policy.max_chunk_size:
            raise ValidationFailure(
                f"Chunk exceeds the {self.policy.max_chunk_size} byte limit", status_code=413
            )

        key = ChunkKey(device_id=device_id or "", original_name=name, total_chunks=total_chunks)
        try:
            await self.chunks.put(key, chunk_index, source, max_bytes=self.policy.max_chunk_size)
        except OSError as exc:
            logger.error("Failed to write chunk %d of %s: %s", chunk_index, name, exc)
            raise StorageFailure("Failed to store chunk") from exc

        chunk_set = await self.chunks.load(key)
        if chunk_set.size_bytes > self.policy.max_upload_size:
            await self.chunks.purge(key)
            logger.warning("Chunked upload of %s exceeded the size limit; chunks purged", name)
            raise ValidationFailure(
                f"File exceeds the {self.policy.max_upload_size} byte limit", status_code=413
            )
        return ChunkAck(
            chunk_index=chunk_index,
            received=len(chunk_set.received),
            total_chunks=total_chunks,
            complete=chunk_set.is_complete,
        )

    async def merge_chunks(
        self,
        session: AsyncSession,
        original_name: str | None,
        total_chunks: int,
        device_id: str | None = None,
        *,
        mime_type: str | None = None,
        password: str | None = None,
    ) -> SharedFile:
        """Reassemble a complete chunk set into one file.

        Concurrent calls for the same upload share a single merge. A merge
        with missing chunks raises IncompleteUpload and keeps the received
        chunks; once merging starts the chunks are purged whatever the outcome.
        """
        self._validate_chunk_params(0, total_chunks)
        name = self._validate_name(original_name)
        resolved_mime = resolve_mime_type(name, mime_type)
        self._validate_type(name, resolved_mime)
        password_hash = await asyncio.to_thread(hash_password, password) if password else None

        key = ChunkKey(device_id=device_id or "", original_name=name, total_chunks=total_chunks)
        return await self._merges.run(
            key,
            lambda: self._merge(
                session,
                key,
                mime_type=resolved_mime,
                device_id=device_id,
                password_hash=password_hash,
            ),
        )

    async def _merge(
        self,
        session: AsyncSession,
        key: ChunkKey,
        *,
        mime_type: str,
        device_id: str | None,
        password_hash: str | None,
    ) -> SharedFile:
        chunk_set = await self.chunks.load(key)
        if not chunk_set.is_complete:
            missing = chunk_set.missing
            raise IncompleteUpload(
                f"Missing {len(missing)} of {key.total_chunks} chunks", missing=missing
            )

        try:
            self._validate_size(chunk_set.size_bytes)
            record = await self._finalize(
                session,
                chunk_set.iter_bytes(),
                name=key.original_name,
                mime_type=mime_type,
                device_id=device_id,
                password_hash=password_hash,
            )
        finally:
            await self.chunks.purge(key)
        logger.info("Merged %d chunks into %s", key.total_chunks, record.stored_name)
        return record
