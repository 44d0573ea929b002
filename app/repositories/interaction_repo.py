"""Repository layer for learner interactions (question attempts).

An interaction is addressed by its SCORM identifier within a session; a later
commit carrying the same identifier rewrites the row (test retries).
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.models.persisted import InteractionRecord

INTERACTION_FIELDS = (
    "type",
    "timestamp",
    "correct_responses",
    "learner_response",
    "result",
    "latency",
    "description",
)


class InteractionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_many(
        self, session_id: str, interactions: Sequence[Dict[str, Any]]
    ) -> int:
        """Insert or rewrite interactions keyed by ``interaction_id``.

        Each item carries ``interaction_id`` plus any of
        ``INTERACTION_FIELDS``; fields absent from an item keep their stored
        value on rewrite.
        """
        if not interactions:
            return 0
        ids = [item["interaction_id"] for item in interactions]
        result = await self.session.execute(
            select(InteractionRecord).where(
                InteractionRecord.session_id == session_id,
                InteractionRecord.interaction_id.in_(ids),
            )
        )
        existing = {r.interaction_id: r for r in result.scalars().all()}
        for item in interactions:
            record = existing.get(item["interaction_id"])
            if record is None:
                record = InteractionRecord(
                    session_id=session_id,
                    interaction_id=item["interaction_id"],
                )
                self.session.add(record)
                existing[record.interaction_id] = record
            for name in INTERACTION_FIELDS:
                if name in item:
                    setattr(record, name, item[name])
            record.updated_at = datetime.utcnow()
        await self.session.commit()
        return len(interactions)

    async def list(self, session_id: str) -> Sequence[InteractionRecord]:
        result = await self.session.execute(
            select(InteractionRecord)
            .where(InteractionRecord.session_id == session_id)
            .order_by(InteractionRecord.timestamp, InteractionRecord.id)
        )
        return result.scalars().all()
