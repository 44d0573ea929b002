"""Offline synchronization router.

Accepts batches of actions recorded while a client was disconnected, exposes
queue status and lets operators drive the sync processor by hand.
"""
from __future__ import annotations
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.config import get_session
from app.repositories.sync_queue_repo import SyncQueueRepository
from app.services.runtime import RuntimeService
from app.services.sync_scheduler import SyncScheduler
from app.utils.feature_flags import require_feature
from app.utils.settings import Settings, get_settings
from app.utils.validation import validate_action_payload, validate_batch_size

router = APIRouter(prefix="/sync", tags=["Offline Sync"])


def get_sync_scheduler(request: Request) -> SyncScheduler:
    """FastAPI dependency returning the scheduler owned by the app."""
    scheduler = getattr(request.app.state, "sync_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Sync processor not ready")
    return scheduler


class OfflineAction(BaseModel):
    kind: Literal["initialize", "commit", "terminate"] = Field(
        ..., validation_alias=AliasChoices("kind", "type")
    )
    payload: Optional[dict] = Field(
        None, validation_alias=AliasChoices("payload", "data")
    )
    timestamp: Optional[datetime] = None


class UploadRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, max_length=64)
    packageId: str = Field(..., min_length=1, max_length=64)
    actions: List[OfflineAction]


class AutoSyncRequest(BaseModel):
    intervalSeconds: Optional[float] = Field(None, gt=0)


@router.post("/upload", dependencies=[Depends(require_feature("offline_sync"))])
async def upload_offline_actions(
    payload: UploadRequest,
    db: AsyncSession = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
    settings: Settings = Depends(get_settings),
):
    """Queue an offline batch, then run a sync pass right away."""
    validate_batch_size(len(payload.actions), settings)
    actions = [
        {
            "kind": action.kind,
            "payload": validate_action_payload(
                action.kind, action.payload, settings
            ),
            "timestamp": action.timestamp,
        }
        for action in payload.actions
    ]
    runtime = RuntimeService(db, scheduler.processor)
    entry_ids = await runtime.upload_actions(
        payload.sessionId, payload.packageId, actions
    )
    sync_result = await scheduler.trigger_once()
    return {
        "success": True,
        "queued": len(entry_ids),
        "entryIds": entry_ids,
        "sync": sync_result,
    }


@router.get("/status")
async def sync_status(scheduler: SyncScheduler = Depends(get_sync_scheduler)):
    queue = await scheduler.processor.queue_status()
    return {**queue, **scheduler.status()}


@router.post("/trigger")
async def trigger_sync(scheduler: SyncScheduler = Depends(get_sync_scheduler)):
    return await scheduler.trigger_once()


@router.post("/auto-sync/start")
async def start_auto_sync(
    payload: Optional[AutoSyncRequest] = None,
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    interval = payload.intervalSeconds if payload else None
    scheduler.start(interval)
    return {"success": True, **scheduler.status()}


@router.post("/auto-sync/stop")
async def stop_auto_sync(scheduler: SyncScheduler = Depends(get_sync_scheduler)):
    scheduler.stop()
    return {"success": True, **scheduler.status()}


@router.get("/entries")
async def list_entries(
    state: str = Query("pending"),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    max_retries = scheduler.processor.max_retries
    entries = await SyncQueueRepository(db).list_entries(state, max_retries, limit)
    return [e.to_dict(max_retries) for e in entries]


@router.post("/entries/{entry_id}/rearm")
async def rearm_entry(
    entry_id: int,
    db: AsyncSession = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    entry = await SyncQueueRepository(db).rearm(entry_id)
    return {"success": True, "entry": entry.to_dict(scheduler.processor.max_retries)}
