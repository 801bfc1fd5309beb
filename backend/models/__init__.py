"""SQLAlchemy ORM models for QRShare."""

from backend.models.base import Base
from backend.models.file import SharedFile
from backend.models.history import DeviceHistory

__all__ = [
    "Base",
    "DeviceHistory",
    "SharedFile",
]
