"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_db_health, get_session, get_settings
from backend.config import Settings
from backend.services.health_service import STATUS_OK, DatabaseHealth

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    checked_at: str | None = None
    poll_interval: float


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    health: Annotated[DatabaseHealth, Depends(get_db_health)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """Health check endpoint for monitoring, load balancers and polling clients."""
    snapshot = await health.check(session)
    return HealthResponse(
        status="ok" if snapshot.database == STATUS_OK else "degraded",
        version=VERSION,
        database=snapshot.database,
        checked_at=snapshot.checked_at,
        poll_interval=settings.client_poll_interval_seconds,
    )
