"""Per-device recent file history model."""

from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base


class DeviceHistory(Base):
    """Most-recent-first list of file ids shown to or uploaded by one device.

    ``file_ids`` is a JSON array of ``SharedFile.id`` values. The ids are weak
    references: a history row never owns the files it lists.
    """

    __tablename__ = "device_history"

    device_id: Mapped[str] = mapped_column(String, primary_key=True)
    file_ids: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
