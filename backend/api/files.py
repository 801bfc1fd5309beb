"""File sharing API endpoints."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Header, Query, Request, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import (
    get_coordinator,
    get_device_identity,
    get_gateway,
    get_ledger,
    get_session,
    get_settings,
)
from backend.config import Settings
from backend.exceptions import NotFound
from backend.models.file import SharedFile
from backend.schemas.files import (
    AddToRecentRequest,
    ChunkAckResponse,
    ClearHistoryRequest,
    DeviceFilesRequest,
    MergeRequest,
    MessageResponse,
    SharedFileResponse,
    UploadResponse,
)
from backend.services.device_identity import DeviceIdentity
from backend.services.download_service import DownloadGateway
from backend.services.history_service import DeviceHistoryLedger
from backend.services.link_service import build_download_url, render_qr_data_uri
from backend.services.upload_service import UploadCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/files", tags=["files"])

READ_BLOCK_SIZE = 1024 * 1024
PASSWORD_HEADER = "X-File-Password"


async def _read_blocks(upload: UploadFile) -> AsyncIterator[bytes]:
    while block := await upload.read(READ_BLOCK_SIZE):
        yield block


async def _share_response(
    request: Request, settings: Settings, record: SharedFile
) -> UploadResponse:
    base_url = settings.public_base_url or str(request.base_url)
    url = build_download_url(base_url, record.stored_name)
    qr_code = await asyncio.to_thread(render_qr_data_uri, url)
    return UploadResponse(
        file=SharedFileResponse.from_record(record), download_url=url, qr_code=qr_code
    )


def _newest_first(records: list[SharedFile]) -> list[SharedFileResponse]:
    ordered = sorted(records, key=lambda r: (r.uploaded_at, r.id), reverse=True)
    return [SharedFileResponse.from_record(r) for r in ordered]


@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_file(
    request: Request,
    file: Annotated[UploadFile, File()],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    coordinator: Annotated[UploadCoordinator, Depends(get_coordinator)],
    identity: Annotated[DeviceIdentity, Depends(get_device_identity)],
    password: Annotated[str | None, Form()] = None,
) -> UploadResponse:
    """Upload a whole file in one request and get its share link."""
    device_id = identity.from_request(request)
    try:
        record = await coordinator.receive_single_upload(
            session,
            _read_blocks(file),
            file.filename,
            file.content_type,
            device_id=device_id,
            password=password or None,
            declared_size=file.size,
        )
    finally:
        await file.close()
    return await _share_response(request, settings, record)


@router.post("/upload-chunk", response_model=ChunkAckResponse)
async def upload_chunk(
    request: Request,
    chunk: Annotated[UploadFile, File()],
    chunk_index: Annotated[int, Form()],
    total_chunks: Annotated[int, Form()],
    original_name: Annotated[str, Form()],
    coordinator: Annotated[UploadCoordinator, Depends(get_coordinator)],
    identity: Annotated[DeviceIdentity, Depends(get_device_identity)],
    mime_type: Annotated[str | None, Form()] = None,
) -> ChunkAckResponse:
    """Store one chunk of a larger upload."""
    device_id = identity.from_request(request)
    try:
        ack = await coordinator.receive_chunk(
            _read_blocks(chunk),
            chunk_index,
            total_chunks,
            original_name,
            device_id,
            mime_type=mime_type,
            declared_size=chunk.size,
        )
    finally:
        await chunk.close()
    return ChunkAckResponse(
        chunk_index=ack.chunk_index,
        received=ack.received,
        total_chunks=ack.total_chunks,
        complete=ack.complete,
    )


@router.post("/merge-chunks", response_model=UploadResponse, status_code=201)
async def merge_chunks(
    request: Request,
    body: MergeRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    coordinator: Annotated[UploadCoordinator, Depends(get_coordinator)],
    identity: Annotated[DeviceIdentity, Depends(get_device_identity)],
) -> UploadResponse:
    """Reassemble previously uploaded chunks into one shared file."""
    record = await coordinator.merge_chunks(
        session,
        body.original_name,
        body.total_chunks,
        identity.from_request(request),
        mime_type=body.mime_type,
        password=body.password or None,
    )
    return await _share_response(request, settings, record)


@router.get("/recent", response_model=list[SharedFileResponse])
async def recent_files(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> list[SharedFileResponse]:
    """Most recent uploads across all devices, newest first."""
    result = await session.execute(
        select(SharedFile)
        .order_by(SharedFile.uploaded_at.desc(), SharedFile.id.desc())
        .limit(settings.recent_limit)
    )
    return [SharedFileResponse.from_record(r) for r in result.scalars().all()]


@router.get("/recent/{device_id}", response_model=list[SharedFileResponse])
async def device_recent_files(
    device_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    ledger: Annotated[DeviceHistoryLedger, Depends(get_ledger)],
    identity: Annotated[DeviceIdentity, Depends(get_device_identity)],
) -> list[SharedFileResponse]:
    """One device's recent-file history, most recent first."""
    records = await ledger.get_history(session, identity.require(device_id))
    return [SharedFileResponse.from_record(r) for r in records]


@router.get("/download/{stored_name}")
async def download_file(
    stored_name: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    gateway: Annotated[DownloadGateway, Depends(get_gateway)],
    password: Annotated[str | None, Query()] = None,
    header_password: Annotated[str | None, Header(alias=PASSWORD_HEADER)] = None,
) -> FileResponse:
    """Stream a file's bytes. Protected files require the password."""
    served = await gateway.serve(session, stored_name, header_password or password)
    return FileResponse(
        path=served.path,
        media_type=served.record.mime_type,
        filename=served.record.original_name,
    )


@router.get("/info/{stored_name}", response_model=SharedFileResponse)
async def file_info(
    stored_name: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    gateway: Annotated[DownloadGateway, Depends(get_gateway)],
) -> SharedFileResponse:
    record = await gateway.resolve(session, stored_name)
    return SharedFileResponse.from_record(record)


@router.post("/device-files", response_model=list[SharedFileResponse])
async def device_files(
    body: DeviceFilesRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> list[SharedFileResponse]:
    """Resolve a client-held list of file ids. Unknown ids are skipped."""
    if not body.file_ids:
        return []
    result = await session.execute(select(SharedFile).where(SharedFile.id.in_(body.file_ids)))
    return _newest_first(list(result.scalars().all()))


@router.post("/add-to-recent/{device_id}", response_model=list[SharedFileResponse])
async def add_to_recent(
    device_id: str,
    body: AddToRecentRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    ledger: Annotated[DeviceHistoryLedger, Depends(get_ledger)],
    identity: Annotated[DeviceIdentity, Depends(get_device_identity)],
) -> list[SharedFileResponse]:
    """Promote existing files into a device's history and return the new history."""
    device = identity.require(device_id)
    ids = body.ids
    result = await session.execute(select(SharedFile.id).where(SharedFile.id.in_(ids)))
    known = set(result.scalars().all())
    unknown = [file_id for file_id in ids if file_id not in known]
    if unknown:
        raise NotFound(f"File not found: {unknown[0]}")
    await ledger.record_many(session, device, ids)
    records = await ledger.get_history(session, device)
    return [SharedFileResponse.from_record(r) for r in records]


@router.post("/clear-recent-history", response_model=MessageResponse)
async def clear_recent_history(
    body: ClearHistoryRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    ledger: Annotated[DeviceHistoryLedger, Depends(get_ledger)],
    identity: Annotated[DeviceIdentity, Depends(get_device_identity)],
) -> MessageResponse:
    await ledger.clear(session, identity.require(body.device_id))
    return MessageResponse(message="Recent history cleared")


@router.post("/mark-all-read", response_model=MessageResponse)
async def mark_all_read() -> MessageResponse:
    """Acknowledge that the client has seen its notifications. Nothing is stored."""
    return MessageResponse(message="All files marked as read")
