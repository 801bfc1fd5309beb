"""Shared API dependencies: settings, DB session, file services."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import Settings
from backend.services.device_identity import DeviceIdentity
from backend.services.download_service import DownloadGateway
from backend.services.health_service import DatabaseHealth
from backend.services.history_service import DeviceHistoryLedger
from backend.services.upload_service import UploadCoordinator


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_coordinator(request: Request) -> UploadCoordinator:
    coordinator: UploadCoordinator = request.app.state.upload_coordinator
    return coordinator


def get_gateway(request: Request) -> DownloadGateway:
    gateway: DownloadGateway = request.app.state.download_gateway
    return gateway


def get_ledger(request: Request) -> DeviceHistoryLedger:
    ledger: DeviceHistoryLedger = request.app.state.history_ledger
    return ledger


def get_device_identity(request: Request) -> DeviceIdentity:
    identity: DeviceIdentity = request.app.state.device_identity
    return identity


def get_db_health(request: Request) -> DatabaseHealth:
    health: DatabaseHealth = request.app.state.db_health
    return health
