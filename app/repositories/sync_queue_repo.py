"""Repository layer for the durable sync queue.

``enqueue`` is the durability boundary of the whole runtime: it commits before
returning, and nothing downstream of it (sink availability, session
existence) can make it fail. Entries leave the pending state only through
``mark_synced``.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, update

from app.exceptions import NotFoundError, ValidationError
from app.models.persisted import SyncQueueEntry

ENTRY_STATES = ("pending", "exhausted", "synced")


class SyncEntryNotFoundError(NotFoundError):
    """Raised when a sync queue entry could not be located."""


class SyncQueueRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # CREATE -----------------------------------------------------------------
    async def enqueue(
        self,
        session_id: str,
        package_id: str,
        action: str,
        payload: Optional[dict],
        recorded_at: Optional[datetime] = None,
    ) -> SyncQueueEntry:
        entry = self._build(session_id, package_id, action, payload, recorded_at)
        self.session.add(entry)
        await self.session.commit()
        await self.session.refresh(entry)
        return entry

    async def enqueue_many(
        self, items: Sequence[Dict[str, Any]]
    ) -> List[SyncQueueEntry]:
        """Queue several actions in one transaction, preserving their order."""
        entries = []
        for item in items:
            entry = self._build(
                item["session_id"],
                item["package_id"],
                item["action"],
                item.get("payload"),
                item.get("recorded_at"),
            )
            self.session.add(entry)
            # flush one by one so ids and created_at follow list order
            await self.session.flush()
            entries.append(entry)
        await self.session.commit()
        return entries

    def _build(
        self,
        session_id: str,
        package_id: str,
        action: str,
        payload: Optional[dict],
        recorded_at: Optional[datetime],
    ) -> SyncQueueEntry:
        return SyncQueueEntry(
            session_id=session_id,
            package_id=package_id,
            action=action,
            payload=payload or {},
            created_at=datetime.utcnow(),
            recorded_at=recorded_at,
            synced=False,
            retry_count=0,
        )

    # READ -------------------------------------------------------------------
    async def get(self, entry_id: int) -> SyncQueueEntry:
        result = await self.session.execute(
            select(SyncQueueEntry)
            .where(SyncQueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if not entry:
            raise SyncEntryNotFoundError(f"Sync entry {entry_id} not found")
        return entry

    async def dequeue_batch(
        self, max_count: int, max_retries: int
    ) -> Sequence[SyncQueueEntry]:
        """Oldest-first pending entries that still have retries left."""
        result = await self.session.execute(
            select(SyncQueueEntry)
            .where(
                SyncQueueEntry.synced.is_(False),
                SyncQueueEntry.retry_count < max_retries,
            )
            .order_by(SyncQueueEntry.created_at, SyncQueueEntry.id)
            .limit(max_count)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def session_backlog(
        self, session_id: str, before_id: int, max_retries: int
    ) -> List[SyncQueueEntry]:
        """Pending entries of one session queued ahead of ``before_id``."""
        anchor = await self.get(before_id)
        result = await self.session.execute(
            select(SyncQueueEntry)
            .where(
                SyncQueueEntry.session_id == session_id,
                SyncQueueEntry.synced.is_(False),
                SyncQueueEntry.retry_count < max_retries,
                SyncQueueEntry.id != before_id,
            )
            .order_by(SyncQueueEntry.created_at, SyncQueueEntry.id)
            .execution_options(populate_existing=True)
        )
        return [
            e
            for e in result.scalars().all()
            if (e.created_at, e.id) < (anchor.created_at, anchor.id)
        ]

    async def list_entries(
        self, state: str, max_retries: int, limit: int = 100
    ) -> Sequence[SyncQueueEntry]:
        if state not in ENTRY_STATES:
            raise ValidationError(
                f"Unknown entry state '{state}'; expected one of "
                f"{', '.join(ENTRY_STATES)}"
            )
        query = select(SyncQueueEntry)
        if state == "synced":
            query = query.where(SyncQueueEntry.synced.is_(True))
        else:
            query = query.where(SyncQueueEntry.synced.is_(False))
            if state == "exhausted":
                query = query.where(SyncQueueEntry.retry_count >= max_retries)
        result = await self.session.execute(
            query.order_by(SyncQueueEntry.created_at, SyncQueueEntry.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def status(self, max_retries: int) -> Dict[str, Any]:
        """Queue depth counters; pending includes exhausted entries."""
        by_action_rows = await self.session.execute(
            select(SyncQueueEntry.action, func.count(SyncQueueEntry.id))
            .where(SyncQueueEntry.synced.is_(False))
            .group_by(SyncQueueEntry.action)
        )
        by_action = {action: count for action, count in by_action_rows.all()}
        synced = await self.session.execute(
            select(func.count(SyncQueueEntry.id)).where(
                SyncQueueEntry.synced.is_(True)
            )
        )
        exhausted = await self.session.execute(
            select(func.count(SyncQueueEntry.id)).where(
                SyncQueueEntry.synced.is_(False),
                SyncQueueEntry.retry_count >= max_retries,
            )
        )
        return {
            "pending": sum(by_action.values()),
            "synced": int(synced.scalar_one()),
            "exhausted": int(exhausted.scalar_one()),
            "byAction": by_action,
        }

    # UPDATE -----------------------------------------------------------------
    async def mark_synced(self, entry_id: int) -> bool:
        """Transition a pending entry to synced; False if it already was."""
        result = await self.session.execute(
            update(SyncQueueEntry)
            .where(
                SyncQueueEntry.id == entry_id,
                SyncQueueEntry.synced.is_(False),
            )
            .values(synced=True, synced_at=datetime.utcnow(), last_error=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def increment_retry(
        self, entry_id: int, error: Optional[str] = None
    ) -> int:
        await self.session.execute(
            update(SyncQueueEntry)
            .where(SyncQueueEntry.id == entry_id)
            .values(
                retry_count=SyncQueueEntry.retry_count + 1,
                last_error=error,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        result = await self.session.execute(
            select(SyncQueueEntry.retry_count).where(
                SyncQueueEntry.id == entry_id
            )
        )
        return int(result.scalar_one())

    async def rearm(self, entry_id: int) -> SyncQueueEntry:
        """Give an exhausted (or failing) pending entry a fresh retry budget."""
        entry = await self.get(entry_id)
        if entry.synced:
            raise ValidationError(f"Sync entry {entry_id} is already synced")
        entry.retry_count = 0
        await self.session.commit()
        await self.session.refresh(entry)
        return entry
