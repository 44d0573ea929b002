"""Record Store: append-only CMI records keyed by session and dotted path.

Rows are never updated in place. The authoritative value for a path is the
newest row by ``(written_at, id)``; the id breaks ties between rows written
within the same clock tick, so reads are deterministic whatever order the
database returns rows in.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select

from app.models.persisted import CmiRecord
from app.services.tree_codec import parse_path, unflatten


class RecordRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def write(self, session_id: str, path: str, value: str) -> CmiRecord:
        parse_path(path)
        record = CmiRecord(
            session_id=session_id,
            path=path,
            value=value,
            written_at=datetime.utcnow(),
        )
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return record

    async def write_many(
        self, session_id: str, pairs: Iterable[Tuple[str, str]]
    ) -> int:
        """Append a batch of records in one transaction; returns the count."""
        now = datetime.utcnow()
        records = []
        for path, value in pairs:
            parse_path(path)
            records.append(
                CmiRecord(
                    session_id=session_id,
                    path=path,
                    value=value,
                    written_at=now,
                )
            )
        if not records:
            return 0
        self.session.add_all(records)
        await self.session.commit()
        return len(records)

    async def read_latest(self, session_id: str, path: str) -> Optional[str]:
        result = await self.session.execute(
            select(CmiRecord.value)
            .where(CmiRecord.session_id == session_id, CmiRecord.path == path)
            .order_by(CmiRecord.written_at.desc(), CmiRecord.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def read_all(self, session_id: str) -> Dict[str, Any]:
        result = await self.session.execute(
            select(CmiRecord.path, CmiRecord.value)
            .where(CmiRecord.session_id == session_id)
            .order_by(CmiRecord.written_at.asc(), CmiRecord.id.asc())
        )
        return unflatten(result.all(), skip_invalid=True)

    async def count(self, session_id: str) -> int:
        result = await self.session.execute(
            select(func.count(CmiRecord.id)).where(
                CmiRecord.session_id == session_id
            )
        )
        return int(result.scalar_one())
