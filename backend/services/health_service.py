"""Database health state shared by request handlers and the health endpoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import text

from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_UNKNOWN = "unknown"


@dataclass(frozen=True)
class HealthSnapshot:
    database: str
    checked_at: str | None = None
    error: str | None = None

    @property
    def is_available(self) -> bool:
        return self.database != STATUS_ERROR


class DatabaseHealth:
    """Last known database status plus change notifications.

    Lives on ``app.state``; handlers report failures with ``mark_unavailable``
    and the health endpoint probes with ``check``. Subscribers are called with
    the new snapshot whenever the status changes.
    """

    def __init__(self, probe_timeout_seconds: float = 5.0) -> None:
        self.probe_timeout_seconds = probe_timeout_seconds
        self._snapshot = HealthSnapshot(database=STATUS_UNKNOWN)
        self._subscribers: list[Callable[[HealthSnapshot], None]] = []

    @property
    def current(self) -> HealthSnapshot:
        return self._snapshot

    def subscribe(self, callback: Callable[[HealthSnapshot], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _update(self, snapshot: HealthSnapshot) -> None:
        previous = self._snapshot
        self._snapshot = snapshot
        if previous.database == snapshot.database:
            return
        logger.info("Database status changed: %s -> %s", previous.database, snapshot.database)
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Health subscriber failed")

    def mark_available(self) -> None:
        self._update(HealthSnapshot(database=STATUS_OK, checked_at=format_iso(now_utc())))

    def mark_unavailable(self, reason: str) -> None:
        self._update(
            HealthSnapshot(database=STATUS_ERROR, checked_at=format_iso(now_utc()), error=reason)
        )

    async def check(self, session: AsyncSession) -> HealthSnapshot:
        """Probe the database with ``SELECT 1`` and record the outcome."""
        try:
            await asyncio.wait_for(session.execute(text("SELECT 1")), self.probe_timeout_seconds)
        except Exception as exc:
            logger.warning("Health check database query failed", exc_info=True)
            self.mark_unavailable(type(exc).__name__)
        else:
            self.mark_available()
        return self._snapshot
