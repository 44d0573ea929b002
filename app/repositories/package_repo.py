"""Repository layer for the package registry.

Sessions, records and interactions hang off a package through ``ON DELETE
CASCADE`` foreign keys; ``delete`` also removes them explicitly so the
cascade holds on engines where foreign key enforcement is off.
"""
from __future__ import annotations
from typing import Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete, select

from app.exceptions import NotFoundError
from app.models.persisted import (
    CmiRecord,
    InteractionRecord,
    PackageRecord,
    SessionRecord,
)


class PackageNotFoundError(NotFoundError):
    """Raised when a package record could not be located."""


class PackageRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # CREATE -----------------------------------------------------------------
    async def create(
        self,
        package_id: str,
        title: str,
        file_path: str,
        file_size: int = 0,
        scorm_version: str = "unknown",
        version: Optional[str] = None,
        identifier: Optional[str] = None,
        launch_path: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PackageRecord:
        record = PackageRecord(
            id=package_id,
            title=title,
            file_path=file_path,
            file_size=file_size,
            scorm_version=scorm_version,
            version=version,
            identifier=identifier,
            launch_path=launch_path,
            json_metadata=metadata or {},
        )
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return record

    # READ -------------------------------------------------------------------
    async def list(self) -> Sequence[PackageRecord]:
        result = await self.session.execute(
            select(PackageRecord).order_by(PackageRecord.uploaded_at.desc())
        )
        return result.scalars().all()

    async def get(self, package_id: str) -> PackageRecord:
        result = await self.session.execute(
            select(PackageRecord).where(PackageRecord.id == package_id)
        )
        record = result.scalar_one_or_none()
        if not record:
            raise PackageNotFoundError(f"Package '{package_id}' not found")
        return record

    async def exists(self, package_id: str) -> bool:
        result = await self.session.execute(
            select(PackageRecord.id).where(PackageRecord.id == package_id)
        )
        return result.scalar_one_or_none() is not None

    # DELETE -----------------------------------------------------------------
    async def delete_record(self, package_id: str) -> PackageRecord:
        record = await self.get(package_id)
        session_ids = select(SessionRecord.id).where(
            SessionRecord.package_id == package_id
        )
        await self.session.execute(
            delete(CmiRecord).where(CmiRecord.session_id.in_(session_ids))
        )
        await self.session.execute(
            delete(InteractionRecord).where(
                InteractionRecord.session_id.in_(session_ids)
            )
        )
        await self.session.execute(
            delete(SessionRecord).where(SessionRecord.package_id == package_id)
        )
        await self.session.delete(record)
        await self.session.commit()
        return record
