"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_EXTENSIONS = [
    "jpeg", "jpg", "png", "gif", "pdf", "doc", "docx", "xls", "xlsx", "zip", "rar",
    "txt", "mp3", "mp4", "mov", "avi", "wav", "psd", "ai", "eps",
]  # fmt: skip

_DEFAULT_MIME_TYPES = [
    "image/*",
    "audio/*",
    "video/*",
    "text/plain",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/zip",
    "application/x-zip-compressed",
    "application/vnd.rar",
    "application/postscript",
]


class Settings(BaseSettings):
    """QRShare application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/qrshare.db"
    db_pool_timeout_seconds: float = Field(default=5.0, gt=0)
    db_connect_timeout_seconds: float = Field(default=5.0, gt=0)

    # Paths
    storage_dir: Path = Path("./data/storage")
    frontend_dir: Path = Path("./frontend/build")

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=5000, ge=1, le=65535)
    public_base_url: str | None = None

    # CORS
    cors_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Upload policy
    max_upload_size: int = Field(default=1024 * 1024 * 1024, ge=1)
    max_chunk_size: int = Field(default=64 * 1024 * 1024, ge=1)
    max_chunks: int = Field(default=10_000, ge=1)
    allowed_extensions: list[str] = Field(default_factory=lambda: list(_DEFAULT_EXTENSIONS))
    allowed_mime_types: list[str] = Field(default_factory=lambda: list(_DEFAULT_MIME_TYPES))

    # History
    history_cap: int = Field(default=10, ge=1, le=100)
    recent_limit: int = Field(default=10, ge=1, le=100)

    # Chunk housekeeping
    chunk_ttl_seconds: int = Field(default=24 * 3600, ge=1)
    chunk_cleanup_interval_seconds: int = Field(default=3600, ge=1)

    # Passed through to clients
    client_poll_interval_seconds: float = Field(default=5.0, gt=0)

    @property
    def files_dir(self) -> Path:
        """Directory holding finalized uploads."""
        return self.storage_dir / "files"

    @property
    def chunks_dir(self) -> Path:
        """Directory holding in-flight chunked uploads."""
        return self.storage_dir / "chunks"

    def validate_runtime_settings(self) -> None:
        """Validate settings that must hold before serving traffic."""
        violations: list[str] = []
        if self.max_chunk_size > self.max_upload_size:
            violations.append("MAX_CHUNK_SIZE must not exceed MAX_UPLOAD_SIZE")
        if not self.allowed_extensions and not self.allowed_mime_types:
            violations.append("ALLOWED_EXTENSIONS or ALLOWED_MIME_TYPES must be non-empty")
        if not self.debug and not self.trusted_hosts:
            violations.append("TRUSTED_HOSTS must be configured in production")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid runtime configuration: {joined}")
