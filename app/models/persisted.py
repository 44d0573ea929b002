"""SQLAlchemy ORM models for the SCORM runtime store.

Separate from the Pydantic DTOs declared next to each router. This layer
manages persistence concerns only: five tables, one per entity of the runtime
data model.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from sqlalchemy.orm import Mapped, mapped_column, declarative_base
from sqlalchemy import (
    String,
    DateTime,
    JSON,
    Text,
    Float,
    Boolean,
    Integer,
    ForeignKey,
    Index,
    UniqueConstraint,
)

Base = declarative_base()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class PackageRecord(Base):
    __tablename__ = "packages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    scorm_version: Mapped[str] = mapped_column(String(16), default="unknown")
    identifier: Mapped[Optional[str]] = mapped_column(
        String(200), nullable=True
    )
    launch_path: Mapped[Optional[str]] = mapped_column(
        String(500), nullable=True
    )
    file_path: Mapped[str] = mapped_column(String(500))
    file_size: Mapped[int] = mapped_column(Integer, default=0)
    json_metadata: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "version": self.version,
            "scormVersion": self.scorm_version,
            "identifier": self.identifier,
            "launchPath": self.launch_path,
            "fileSize": self.file_size,
            "metadata": self.json_metadata or {},
            "uploadedAt": self.uploaded_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


class SessionRecord(Base):
    """One learner attempt at a package; owns records and interactions."""

    __tablename__ = "scorm_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    package_id: Mapped[str] = mapped_column(
        ForeignKey("packages.id", ondelete="CASCADE"), index=True
    )
    learner_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    state: Mapped[str] = mapped_column(String(16), default="created")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    last_accessed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    terminated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    success_status: Mapped[str] = mapped_column(String(16), default="unknown")
    score_raw: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    score_min: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    score_max: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    session_time: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    total_time: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    suspend_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "packageId": self.package_id,
            "learnerId": self.learner_id,
            "state": self.state,
            "createdAt": self.created_at.isoformat(),
            "lastAccessedAt": self.last_accessed_at.isoformat(),
            "terminatedAt": _iso(self.terminated_at),
            "completed": bool(self.completed),
            "successStatus": self.success_status,
            "score": {
                "raw": self.score_raw,
                "min": self.score_min,
                "max": self.score_max,
            },
            "sessionTime": self.session_time,
            "totalTime": self.total_time,
            "suspendData": self.suspend_data,
        }


class CmiRecord(Base):
    """Append-only (session, dotted path, value) event log."""

    __tablename__ = "cmi_records"
    __table_args__ = (
        Index("ix_cmi_records_session_path", "session_id", "path"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("scorm_sessions.id", ondelete="CASCADE"), index=True
    )
    path: Mapped[str] = mapped_column(String(500))
    value: Mapped[str] = mapped_column(Text)
    written_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "path": self.path,
            "value": self.value,
            "writtenAt": self.written_at.isoformat(),
        }


class InteractionRecord(Base):
    __tablename__ = "interactions"
    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "interaction_id",
            name="uq_interactions_session_interaction",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("scorm_sessions.id", ondelete="CASCADE"), index=True
    )
    interaction_id: Mapped[str] = mapped_column(String(255))
    type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    timestamp: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    correct_responses: Mapped[Optional[Any]] = mapped_column(
        JSON, nullable=True
    )
    learner_response: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )
    result: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    latency: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def to_dict(self) -> dict:
        return {
            "id": self.interaction_id,
            "sessionId": self.session_id,
            "type": self.type,
            "timestamp": self.timestamp,
            "correctResponses": self.correct_responses,
            "learnerResponse": self.learner_response,
            "result": self.result,
            "latency": self.latency,
            "description": self.description,
            "updatedAt": self.updated_at.isoformat(),
        }


class SyncQueueEntry(Base):
    """Durable record of one action awaiting application.

    session_id/package_id are plain values, not foreign keys: an entry may be
    queued before the session row it refers to exists.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_pending", "synced", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), index=True)
    package_id: Mapped[str] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(String(16))
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    recorded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    synced: Mapped[bool] = mapped_column(Boolean, default=False)
    synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def is_exhausted(self, max_retries: int) -> bool:
        return not self.synced and self.retry_count >= max_retries

    def to_dict(self, max_retries: Optional[int] = None) -> dict:
        data = {
            "id": self.id,
            "sessionId": self.session_id,
            "packageId": self.package_id,
            "action": self.action,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat(),
            "recordedAt": _iso(self.recorded_at),
            "synced": bool(self.synced),
            "syncedAt": _iso(self.synced_at),
            "retryCount": self.retry_count,
            "lastError": self.last_error,
        }
        if max_retries is not None:
            data["exhausted"] = self.is_exhausted(max_retries)
        return data
