"""SCORM runtime router.

Online counterpart of the JavaScript runtime API (``Initialize``,
``Commit``, ``Terminate``, ``GetValue``, ``SetValue``). Lifecycle writes go
through the sync queue and are applied immediately; reads come straight from
the record store.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.config import get_session
from app.routers.sync import get_sync_scheduler
from app.services.runtime import RuntimeService
from app.services.session_state import SessionStateMachine
from app.services.sync_scheduler import SyncScheduler

router = APIRouter(prefix="/scorm", tags=["SCORM Runtime"])


class InitializeRequest(BaseModel):
    learnerId: Optional[str] = Field(None, max_length=255)


class CommitRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, max_length=64)
    data: Dict[str, Any] = Field(default_factory=dict)


class SetValueRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, max_length=64)
    value: Any = None


def get_runtime(
    db: AsyncSession = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
) -> RuntimeService:
    return RuntimeService(db, scheduler.processor)


@router.post("/{package_id}/initialize")
async def initialize(
    package_id: str,
    payload: Optional[InitializeRequest] = None,
    runtime: RuntimeService = Depends(get_runtime),
):
    learner_id = payload.learnerId if payload else None
    result = await runtime.initialize(package_id, learner_id)
    return {"success": True, **result}


@router.post("/{package_id}/commit")
async def commit(
    package_id: str,
    payload: CommitRequest,
    runtime: RuntimeService = Depends(get_runtime),
):
    result = await runtime.commit(package_id, payload.sessionId, payload.data)
    return {"success": True, **result}


@router.post("/{package_id}/terminate")
async def terminate(
    package_id: str,
    payload: CommitRequest,
    runtime: RuntimeService = Depends(get_runtime),
):
    result = await runtime.terminate(package_id, payload.sessionId, payload.data)
    return {"success": True, **result}


@router.get("/{package_id}/get/{element}")
async def get_value(
    package_id: str,
    element: str,
    sessionId: str = Query(..., min_length=1),
    runtime: RuntimeService = Depends(get_runtime),
):
    value = await runtime.get_value(sessionId, element)
    return {"element": element, "value": value, "found": value is not None}


@router.post("/{package_id}/set/{element}")
async def set_value(
    package_id: str,
    element: str,
    payload: SetValueRequest,
    runtime: RuntimeService = Depends(get_runtime),
):
    written = await runtime.set_value(payload.sessionId, element, payload.value)
    return {"success": True, "element": element, "recordsWritten": written}


@router.get("/session/{session_id}")
async def load_session(session_id: str, db: AsyncSession = Depends(get_session)):
    data = await SessionStateMachine(db).load_initial_data(session_id)
    if data is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return data


@router.get("/package/{package_id}/sessions")
async def sessions_for_package(
    package_id: str, db: AsyncSession = Depends(get_session)
):
    records = await SessionStateMachine(db).sessions_for_package(package_id)
    return [r.to_dict() for r in records]


@router.get("/learner/{learner_id}/sessions")
async def sessions_for_learner(
    learner_id: str, db: AsyncSession = Depends(get_session)
):
    records = await SessionStateMachine(db).sessions_for_learner(learner_id)
    return [r.to_dict() for r in records]
