"""Shared-file schemas."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, model_validator

if TYPE_CHECKING:
    from backend.models.file import SharedFile


class SharedFileResponse(BaseModel):
    """Public metadata of a shared file. Never includes the password hash."""

    id: int
    stored_name: str
    original_name: str
    size_bytes: int
    mime_type: str
    download_count: int
    uploaded_at: str
    protected: bool = False

    @classmethod
    def from_record(cls, record: SharedFile) -> SharedFileResponse:
        return cls(
            id=record.id,
            stored_name=record.stored_name,
            original_name=record.original_name,
            size_bytes=record.size_bytes,
            mime_type=record.mime_type,
            download_count=record.download_count,
            uploaded_at=record.uploaded_at,
            protected=record.is_protected,
        )


class UploadResponse(BaseModel):
    """A finished upload together with its share link and QR code."""

    file: SharedFileResponse
    download_url: str
    qr_code: str = Field(description="PNG QR code of download_url as a data: URI")


class ChunkAckResponse(BaseModel):
    chunk_index: int
    received: int
    total_chunks: int
    complete: bool


class MergeRequest(BaseModel):
    """Request to reassemble a chunked upload."""

    original_name: str = Field(min_length=1, max_length=255)
    total_chunks: int = Field(ge=1)
    mime_type: str | None = Field(default=None, max_length=255)
    password: str | None = Field(default=None, max_length=72)


class DeviceFilesRequest(BaseModel):
    file_ids: list[int] = Field(max_length=100)


class AddToRecentRequest(BaseModel):
    """Either a single ``file_id`` or a list of ``file_ids``."""

    file_id: int | None = None
    file_ids: list[int] | None = Field(default=None, min_length=1, max_length=100)

    @model_validator(mode="after")
    def exactly_one_form(self) -> AddToRecentRequest:
        if (self.file_id is None) == (self.file_ids is None):
            raise ValueError("Provide exactly one of file_id or file_ids")
        return self

    @property
    def ids(self) -> list[int]:
        if self.file_ids is not None:
            return list(self.file_ids)
        assert self.file_id is not None
        return [self.file_id]


class ClearHistoryRequest(BaseModel):
    device_id: str = Field(min_length=1, max_length=128)


class MessageResponse(BaseModel):
    message: str
