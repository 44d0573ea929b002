"""
Session State Machine

Governs the lifecycle of a SCORM session::

    created -> active -> (committed)* -> terminated

and derives the session summary (completion, success status, score, time,
suspend data) from committed CMI data. Commit payloads come in two shapes:

* SCORM 2004: ``cmi.completion_status``, ``cmi.success_status``,
  ``cmi.score.*``, ``cmi.session_time``, ...
* SCORM 1.2: ``cmi.core.lesson_status``, ``cmi.core.score.*``,
  ``cmi.core.session_time``, ...

For every summary field the 2004 value wins when it is present and non-empty;
otherwise the 1.2 value is used. Fields absent from a payload leave the stored
summary untouched, so replaying the same payload is idempotent.

Writes after termination are still persisted to the record store, but the
summary is frozen at the last commit before termination.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import ValidationError
from app.models.persisted import SessionRecord
from app.repositories.interaction_repo import InteractionRepository
from app.repositories.record_repo import RecordRepository
from app.repositories.session_repo import SessionRepository
from app.services.tree_codec import flatten, parse_path, scalar_to_str

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    COMMITTED = "committed"
    TERMINATED = "terminated"


TRANSITIONS = {
    SessionState.CREATED: {
        SessionState.ACTIVE,
        SessionState.COMMITTED,
        SessionState.TERMINATED,
    },
    SessionState.ACTIVE: {SessionState.COMMITTED, SessionState.TERMINATED},
    SessionState.COMMITTED: {SessionState.COMMITTED, SessionState.TERMINATED},
    SessionState.TERMINATED: set(),
}

SUCCESS_STATUSES = ("passed", "failed", "completed", "incomplete", "unknown")
LEGACY_COMPLETED = ("completed", "passed")


@dataclass
class CommitResult:
    session_id: str
    records_written: int
    interactions_upserted: int
    summary_updated: bool

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "committed": True,
            "recordsWritten": self.records_written,
            "interactionsUpserted": self.interactions_upserted,
            "summaryUpdated": self.summary_updated,
        }


# Payload helpers ----------------------------------------------------------


def normalize_commit_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return the payload rooted at ``cmi``.

    Clients send either ``{"cmi": {...}}`` (possibly with sibling roots such
    as ``adl``) or the bare CMI object.
    """
    if not payload:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Commit payload must be an object")
    if isinstance(payload.get("cmi"), dict):
        return payload
    return {"cmi": payload}


def _dig(tree: Dict[str, Any], *keys: str) -> Any:
    node: Any = tree
    for key in keys:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _first(cmi: Dict[str, Any], current: tuple, legacy: tuple) -> Any:
    value = _dig(cmi, *current)
    if _present(value):
        return value
    value = _dig(cmi, *legacy)
    return value if _present(value) else None


def _to_float(field: str, value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s value %r", field, value)
        return None


def derive_summary(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Map a commit payload onto ``SessionRecord`` summary columns.

    Only the fields the payload actually carries are returned.
    """
    cmi = normalize_commit_payload(payload).get("cmi") or {}
    fields: Dict[str, Any] = {}

    completion_status = _dig(cmi, "completion_status")
    lesson_status = _dig(cmi, "core", "lesson_status")
    if _present(completion_status):
        fields["completed"] = str(completion_status) == "completed"
    elif _present(lesson_status):
        fields["completed"] = str(lesson_status) in LEGACY_COMPLETED

    status = _first(cmi, ("success_status",), ("core", "lesson_status"))
    if status is not None:
        status = str(status)
        fields["success_status"] = (
            status if status in SUCCESS_STATUSES else "unknown"
        )

    for part in ("raw", "min", "max"):
        value = _first(cmi, ("score", part), ("core", "score", part))
        if value is not None:
            number = _to_float(f"score.{part}", value)
            if number is not None:
                fields[f"score_{part}"] = number

    for name in ("session_time", "total_time", "suspend_data"):
        value = _first(cmi, (name,), ("core", name))
        if value is not None:
            fields[name] = scalar_to_str(value)

    return fields


def extract_interactions(payload: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Interaction rows found under ``cmi.interactions``.

    Accepts a list or an index-keyed object (what a flattened-and-rebuilt
    tree looks like); entries without an ``id`` are skipped.
    """
    raw = _dig(normalize_commit_payload(payload), "cmi", "interactions")
    if isinstance(raw, dict):
        raw = list(raw.values())
    if not isinstance(raw, list):
        return []

    rows = []
    for item in raw:
        if not isinstance(item, dict) or not _present(item.get("id")):
            continue
        row: Dict[str, Any] = {"interaction_id": scalar_to_str(item["id"])}
        simple = {
            "type": item.get("type"),
            "timestamp": item.get("timestamp", item.get("time")),
            "learner_response": item.get(
                "learner_response", item.get("student_response")
            ),
            "result": item.get("result"),
            "latency": item.get("latency"),
            "description": item.get("description"),
        }
        for name, value in simple.items():
            if value is not None:
                row[name] = scalar_to_str(value)
        if item.get("correct_responses") is not None:
            row["correct_responses"] = item["correct_responses"]
        rows.append(row)
    return rows


# State machine ------------------------------------------------------------


class SessionStateMachine:
    """Lifecycle and commit handling for SCORM sessions."""

    def __init__(self, session: AsyncSession):
        self.sessions = SessionRepository(session)
        self.records = RecordRepository(session)
        self.interactions = InteractionRepository(session)

    async def _transition(
        self, record: SessionRecord, target: SessionState
    ) -> SessionRecord:
        current = SessionState(record.state)
        if target not in TRANSITIONS[current]:
            raise ValidationError(
                f"Session '{record.id}' cannot move from {current.value} "
                f"to {target.value}"
            )
        return await self.sessions.set_state(
            record, target.value, terminated=target is SessionState.TERMINATED
        )

    async def get_session(self, session_id: str) -> SessionRecord:
        return await self.sessions.get(session_id)

    async def initialize(
        self,
        package_id: str,
        learner_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """Create a new active session and return its id.

        When ``session_id`` is supplied and already exists (a replayed
        offline initialize) the existing id is returned; a session left in
        ``created`` is moved to ``active`` on the way.
        """
        if session_id:
            existing = await self.sessions.find(session_id)
            if existing is not None:
                logger.info("Session %s already initialized", session_id)
                if existing.state == SessionState.CREATED.value:
                    await self._transition(existing, SessionState.ACTIVE)
                return existing.id
        session_id = session_id or str(uuid.uuid4())
        await self.sessions.create(
            session_id=session_id,
            package_id=package_id,
            learner_id=learner_id,
            state=SessionState.ACTIVE.value,
        )
        logger.info(
            "Initialized session %s for package %s", session_id, package_id
        )
        return session_id

    async def commit(
        self, session_id: str, payload: Optional[Dict[str, Any]]
    ) -> CommitResult:
        record = await self.sessions.get(session_id)
        normalized = normalize_commit_payload(payload)
        tree_records = flatten(normalized)

        frozen = record.state == SessionState.TERMINATED.value
        if frozen:
            logger.info(
                "Session %s is terminated; storing data without summary "
                "update",
                session_id,
            )
        else:
            summary = derive_summary(normalized)
            await self.sessions.update_summary(record, summary)
            await self._transition(record, SessionState.COMMITTED)

        written = await self.records.write_many(session_id, tree_records)
        interactions = extract_interactions(normalized)
        upserted = await self.interactions.upsert_many(session_id, interactions)
        return CommitResult(
            session_id=session_id,
            records_written=written,
            interactions_upserted=upserted,
            summary_updated=not frozen,
        )

    async def terminate(
        self, session_id: str, final_payload: Optional[Dict[str, Any]] = None
    ) -> SessionRecord:
        record = await self.sessions.get(session_id)
        if final_payload:
            await self.commit(session_id, final_payload)
        if record.state != SessionState.TERMINATED.value:
            await self._transition(record, SessionState.TERMINATED)
            logger.info("Terminated session %s", session_id)
        return record

    async def get_value(self, session_id: str, path: str) -> Optional[str]:
        await self.sessions.get(session_id)
        parse_path(path)
        return await self.records.read_latest(session_id, path)

    async def set_value(self, session_id: str, path: str, value: Any) -> int:
        """Write one element (nested values are flattened under ``path``)."""
        record = await self.sessions.get(session_id)
        parse_path(path)
        written = await self.records.write_many(
            session_id, flatten(value, prefix=path)
        )
        await self.sessions.touch(record)
        return written

    async def load_initial_data(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Everything a player needs to resume: summary, CMI tree, interactions."""
        record = await self.sessions.find(session_id)
        if record is None:
            return None
        cmi = await self.records.read_all(session_id)
        interactions = await self.interactions.list(session_id)
        return {
            "session": record.to_dict(),
            "cmi": cmi,
            "interactions": [i.to_dict() for i in interactions],
        }

    async def sessions_for_package(self, package_id: str) -> Sequence[SessionRecord]:
        return await self.sessions.list_by_package(package_id)

    async def sessions_for_learner(self, learner_id: str) -> Sequence[SessionRecord]:
        return await self.sessions.list_by_learner(learner_id)
