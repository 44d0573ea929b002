"""
Runtime service

Single write path for the SCORM runtime API. Online ``initialize``,
``commit`` and ``terminate`` calls are queued first and then applied
immediately through the sync processor, exactly like actions uploaded from an
offline client; the queue is therefore the only way session state changes.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import SinkError
from app.repositories.package_repo import PackageNotFoundError, PackageRepository
from app.repositories.session_repo import SessionRepository
from app.repositories.sync_queue_repo import SyncQueueRepository
from app.services.session_state import (
    CommitResult,
    SessionStateMachine,
    normalize_commit_payload,
)
from app.services.sync_processor import SyncProcessor
from app.services.tree_codec import flatten

logger = logging.getLogger(__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class RuntimeService:
    def __init__(self, db: AsyncSession, processor: SyncProcessor):
        self.db = db
        self.processor = processor
        self.queue = SyncQueueRepository(db)
        self.machine = SessionStateMachine(db)

    @property
    def local(self) -> bool:
        return self.processor.mode == "local"

    async def _ensure_package(self, package_id: str) -> None:
        if not await PackageRepository(self.db).exists(package_id):
            raise PackageNotFoundError(f"Package '{package_id}' not found")

    async def _ensure_session(self, session_id: str) -> None:
        await SessionRepository(self.db).get(session_id)

    async def _queue_and_apply(
        self,
        session_id: str,
        package_id: str,
        action: str,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        entry = await self.queue.enqueue(session_id, package_id, action, payload)
        try:
            result = await self.processor.apply_now(entry.id)
        except SinkError as e:
            if self.local:
                raise
            logger.warning(
                "Sink unavailable for %s of session %s, left queued: %s",
                action,
                session_id,
                e.message,
            )
            return {"sessionId": session_id, "synced": False, "queued": entry.id}
        response: Dict[str, Any] = {"sessionId": session_id, "synced": True}
        if isinstance(result, CommitResult):
            response.update(result.to_dict())
        return response

    # Lifecycle --------------------------------------------------------------

    async def initialize(
        self, package_id: str, learner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if self.local:
            await self._ensure_package(package_id)
        session_id = str(uuid.uuid4())
        return await self._queue_and_apply(
            session_id, package_id, "initialize", {"learnerId": learner_id}
        )

    async def commit(
        self, package_id: str, session_id: str, data: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        payload = normalize_commit_payload(data)
        flatten(payload)
        if self.local:
            await self._ensure_session(session_id)
        return await self._queue_and_apply(session_id, package_id, "commit", payload)

    async def terminate(
        self, package_id: str, session_id: str, data: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        payload = normalize_commit_payload(data)
        flatten(payload)
        if self.local:
            await self._ensure_session(session_id)
        response = await self._queue_and_apply(
            session_id, package_id, "terminate", payload
        )
        response["terminated"] = response["synced"]
        return response

    # Offline batches ----------------------------------------------------------

    async def upload_actions(
        self,
        session_id: str,
        package_id: str,
        actions: List[Dict[str, Any]],
    ) -> List[int]:
        """Queue actions recorded offline, ordered by client timestamp.

        Actions without a timestamp keep their position relative to each
        other and sort before timestamped ones.
        """
        for action in actions:
            action["timestamp"] = _naive_utc(action.get("timestamp"))
        ordered = sorted(
            actions,
            key=lambda a: (
                a["timestamp"] is not None,
                a["timestamp"] or datetime.min,
            ),
        )
        entries = await self.queue.enqueue_many(
            [
                {
                    "session_id": session_id,
                    "package_id": package_id,
                    "action": action["kind"],
                    "payload": action.get("payload"),
                    "recorded_at": action.get("timestamp"),
                }
                for action in ordered
            ]
        )
        logger.info(
            "Queued %d offline actions for session %s", len(entries), session_id
        )
        return [entry.id for entry in entries]

    # Reads ------------------------------------------------------------------

    async def get_value(self, session_id: str, element: str) -> Optional[str]:
        return await self.machine.get_value(session_id, element)

    async def set_value(self, session_id: str, element: str, value: Any) -> int:
        return await self.machine.set_value(session_id, element, value)
