"""Device history ledger: capped, most-recent-first file lists per device."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from backend.models.file import SharedFile
from backend.models.history import DeviceHistory
from backend.services.datetime_service import format_iso, now_utc
from backend.services.keyed_lock import KeyedLock

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

HISTORY_CAP = 10


def promote_ref(refs: Sequence[int], file_id: int, cap: int = HISTORY_CAP) -> list[int]:
    """Put ``file_id`` at the head, dropping any older copy, and truncate to ``cap``.

    The relative order of the other entries is preserved.
    """
    return [file_id, *(ref for ref in refs if ref != file_id)][:cap]


def _decode_refs(raw: str) -> list[int]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding corrupt device history payload")
        return []
    if not isinstance(data, list):
        return []
    return [ref for ref in data if isinstance(ref, int) and not isinstance(ref, bool)]


class DeviceHistoryLedger:
    """Maintains each device's capped most-recent-first list of file references.

    Every read-modify-write of one device's list runs under that device's lock,
    and the lock is held until the transaction commits. Devices never block
    each other.
    """

    def __init__(self, cap: int = HISTORY_CAP) -> None:
        self.cap = cap
        self._locks = KeyedLock()

    @asynccontextmanager
    async def locked(self, device_id: str) -> AsyncIterator[None]:
        """Hold ``device_id``'s critical section; pair with the ``stage_*`` methods."""
        async with self._locks.hold(device_id):
            yield

    async def get_refs(self, session: AsyncSession, device_id: str) -> list[int]:
        """Raw file ids for a device, most recent first. Unknown device -> []."""
        entry = await session.get(DeviceHistory, device_id, populate_existing=True)
        if entry is None:
            return []
        return _decode_refs(entry.file_ids)

    async def _store_refs(self, session: AsyncSession, device_id: str, refs: list[int]) -> None:
        entry = await session.get(DeviceHistory, device_id)
        payload = json.dumps(refs)
        timestamp = format_iso(now_utc())
        if entry is None:
            session.add(DeviceHistory(device_id=device_id, file_ids=payload, updated_at=timestamp))
        else:
            entry.file_ids = payload
            entry.updated_at = timestamp
        await session.flush()

    async def stage_many(
        self, session: AsyncSession, device_id: str, file_ids: Iterable[int]
    ) -> list[int]:
        """Apply promotions in arrival order without committing.

        The caller must hold ``locked(device_id)`` and commit the session.
        The last id ends at position 0; only the ``cap`` most recent survive.
        """
        refs = await self.get_refs(session, device_id)
        for file_id in file_ids:
            refs = promote_ref(refs, file_id, self.cap)
        await self._store_refs(session, device_id, refs)
        return refs

    async def record_upload(self, session: AsyncSession, device_id: str, file_id: int) -> list[int]:
        """Promote ``file_id`` to the head of the device's history and commit."""
        return await self.record_many(session, device_id, [file_id])

    async def record_many(
        self, session: AsyncSession, device_id: str, file_ids: Iterable[int]
    ) -> list[int]:
        async with self.locked(device_id):
            refs = await self.stage_many(session, device_id, file_ids)
            await session.commit()
        return refs

    async def get_history(self, session: AsyncSession, device_id: str) -> list[SharedFile]:
        """Resolve the device's history to file records in stored order.

        Ids whose file no longer exists are skipped.
        """
        refs = await self.get_refs(session, device_id)
        if not refs:
            return []
        result = await session.execute(select(SharedFile).where(SharedFile.id.in_(refs)))
        by_id = {record.id: record for record in result.scalars().all()}
        return [by_id[ref] for ref in refs if ref in by_id]

    async def clear(self, session: AsyncSession, device_id: str) -> None:
        """Delete the device's history. Clearing an unknown device is a no-op."""
        async with self.locked(device_id):
            await session.execute(delete(DeviceHistory).where(DeviceHistory.device_id == device_id))
            await session.commit()
        logger.info("Cleared recent history for device %s", device_id)

    async def remove_entry(self, session: AsyncSession, device_id: str, file_id: int) -> list[int]:
        """Remove one reference; the others keep their relative order."""
        async with self.locked(device_id):
            refs = await self.get_refs(session, device_id)
            if file_id not in refs:
                return refs
            refs = [ref for ref in refs if ref != file_id]
            await self._store_refs(session, device_id, refs)
            await session.commit()
        return refs
