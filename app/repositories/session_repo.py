"""Repository layer for SCORM session rows.

Summary fields are written only through ``update_summary``; lifecycle
transitions are decided by the session state machine, not here.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.exceptions import NotFoundError
from app.models.persisted import SessionRecord


class SessionNotFoundError(NotFoundError):
    """Raised when a session record could not be located."""


class SessionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # CREATE -----------------------------------------------------------------
    async def create(
        self,
        session_id: str,
        package_id: str,
        learner_id: Optional[str],
        state: str,
    ) -> SessionRecord:
        now = datetime.utcnow()
        record = SessionRecord(
            id=session_id,
            package_id=package_id,
            learner_id=learner_id,
            state=state,
            created_at=now,
            last_accessed_at=now,
        )
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return record

    # READ -------------------------------------------------------------------
    async def find(self, session_id: str) -> Optional[SessionRecord]:
        result = await self.session.execute(
            select(SessionRecord).where(SessionRecord.id == session_id)
        )
        return result.scalar_one_or_none()

    async def get(self, session_id: str) -> SessionRecord:
        record = await self.find(session_id)
        if not record:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        return record

    async def list_by_package(self, package_id: str) -> Sequence[SessionRecord]:
        result = await self.session.execute(
            select(SessionRecord)
            .where(SessionRecord.package_id == package_id)
            .order_by(SessionRecord.created_at)
        )
        return result.scalars().all()

    async def list_by_learner(self, learner_id: str) -> Sequence[SessionRecord]:
        result = await self.session.execute(
            select(SessionRecord)
            .where(SessionRecord.learner_id == learner_id)
            .order_by(SessionRecord.created_at)
        )
        return result.scalars().all()

    # UPDATE -----------------------------------------------------------------
    async def update_summary(
        self, record: SessionRecord, fields: Dict[str, Any]
    ) -> SessionRecord:
        for name, value in fields.items():
            setattr(record, name, value)
        record.last_accessed_at = datetime.utcnow()
        await self.session.commit()
        return record

    async def set_state(
        self, record: SessionRecord, state: str, terminated: bool = False
    ) -> SessionRecord:
        now = datetime.utcnow()
        record.state = state
        record.last_accessed_at = now
        if terminated and record.terminated_at is None:
            record.terminated_at = now
        await self.session.commit()
        return record

    async def touch(self, record: SessionRecord) -> None:
        record.last_accessed_at = datetime.utcnow()
        await self.session.commit()
