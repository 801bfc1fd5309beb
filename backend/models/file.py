"""Shared file metadata model."""

from __future__ import annotations

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base


class SharedFile(Base):
    """One finalized upload. Only ``download_count`` changes after creation."""

    __tablename__ = "shared_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stored_name: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    original_name: Mapped[str] = mapped_column(String, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    uploaded_at: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    password_hash: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_protected(self) -> bool:
        return self.password_hash is not None
