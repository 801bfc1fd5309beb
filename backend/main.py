"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from starlette.middleware.trustedhost import TrustedHostMiddleware

from backend.api.files import router as files_router
from backend.api.health import router as health_router
from backend.config import Settings
from backend.database import create_engine
from backend.exceptions import (
    FileShareError,
    IncompleteUpload,
    InternalServerError,
    ServiceUnavailable,
)
from backend.filesystem.blob_store import BlobStore
from backend.filesystem.chunk_store import ChunkStore
from backend.models.base import Base
from backend.services.cleanup_task import ChunkJanitor
from backend.services.device_identity import ClientAssignedDeviceIdentity
from backend.services.download_service import DownloadGateway
from backend.services.health_service import DatabaseHealth
from backend.services.history_service import DeviceHistoryLedger
from backend.services.upload_service import UploadCoordinator, UploadPolicy

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


def ensure_storage_dirs(settings: Settings) -> None:
    """Create the blob and chunk directories if they do not exist yet."""
    for directory in (settings.storage_dir, settings.files_dir, settings.chunks_dir):
        if directory.exists() and not directory.is_dir():
            msg = f"Storage path exists but is not a directory: {directory}"
            raise NotADirectoryError(msg)
        if not directory.exists():
            directory.mkdir(parents=True)
            logger.info("Created storage directory %s", directory)


def init_services(app: FastAPI, settings: Settings) -> None:
    """Build the file services and attach them to ``app.state``."""
    blobs = BlobStore(settings.files_dir)
    chunks = ChunkStore(settings.chunks_dir)
    ledger = DeviceHistoryLedger(cap=settings.history_cap)
    app.state.blob_store = blobs
    app.state.chunk_store = chunks
    app.state.history_ledger = ledger
    app.state.device_identity = ClientAssignedDeviceIdentity()
    app.state.upload_coordinator = UploadCoordinator(
        blobs, chunks, ledger, UploadPolicy.from_settings(settings)
    )
    app.state.download_gateway = DownloadGateway(blobs)
    app.state.chunk_janitor = ChunkJanitor(
        chunks,
        ttl_seconds=settings.chunk_ttl_seconds,
        interval_seconds=settings.chunk_cleanup_interval_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_settings()
    _configure_logging(settings.debug)
    logger.info("Starting QRShare (debug=%s)", settings.debug)

    db_url = settings.database_url
    if db_url.startswith("sqlite"):
        db_path = db_url.split("///", 1)[-1] if "///" in db_url else None
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        engine, session_factory = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = session_factory
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        logger.critical("Failed to create database schema: %s.", exc)
        raise
    app.state.db_health.mark_available()

    try:
        ensure_storage_dirs(settings)
    except Exception as exc:
        logger.critical(
            "Failed to initialize storage directory at %s: %s.", settings.storage_dir, exc
        )
        raise

    init_services(app, settings)
    janitor: ChunkJanitor = app.state.chunk_janitor
    janitor.start()

    yield

    try:
        await janitor.stop()
    except Exception as exc:
        logger.error("Error during chunk janitor shutdown: %s", exc, exc_info=True)

    try:
        await engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("QRShare stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="QRShare",
        description="Share files between devices with a QR code",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings
    app.state.db_health = DatabaseHealth(probe_timeout_seconds=settings.db_pool_timeout_seconds)

    app.add_middleware(GZipMiddleware, minimum_size=500)

    cors_origins = (
        settings.cors_origins
        if settings.cors_origins
        else (["http://localhost:5173", "http://localhost:5000"] if settings.debug else [])
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    trusted_hosts = settings.trusted_hosts or (
        ["localhost", "127.0.0.1", "::1", "test", "testserver"] if settings.debug else []
    )
    if trusted_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    app.include_router(health_router)
    app.include_router(files_router)

    # Global exception handlers

    def _mark_unavailable(request: Request, reason: str) -> None:
        health: DatabaseHealth = request.app.state.db_health
        health.mark_unavailable(reason)

    @app.exception_handler(FileShareError)
    async def file_share_error_handler(request: Request, exc: FileShareError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
            )
        else:
            logger.info(
                "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
            )
        if isinstance(exc, ServiceUnavailable):
            _mark_unavailable(request, exc.message)
        content: dict[str, object] = {"detail": exc.message, "kind": exc.kind}
        if isinstance(exc, IncompleteUpload):
            content["missing"] = exc.missing
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(
            status_code=422, content={"detail": errors, "kind": "validation_failure"}
        )

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed", "kind": "storage_failure"},
        )

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "kind": "error"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message, "kind": "validation_failure"},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        _mark_unavailable(request, "OperationalError")
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable", "kind": "service_unavailable"},
        )

    @app.exception_handler(PoolTimeoutError)
    async def pool_timeout_handler(request: Request, exc: PoolTimeoutError) -> JSONResponse:
        logger.error("Connection pool exhausted in %s %s: %s", request.method, request.url.path, exc)
        _mark_unavailable(request, "PoolTimeout")
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable", "kind": "service_unavailable"},
        )

    # Serve frontend static files in production
    frontend_dir = settings.frontend_dir
    if frontend_dir.exists():
        app.mount("/", StaticFiles(directory=str(frontend_dir), html=True), name="static")

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
