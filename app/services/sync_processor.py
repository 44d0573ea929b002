"""
Sync Processor

Drains the sync queue. Each pending entry is dispatched by action either to
the local session state machine (local mode) or to an external sync sink
(forward mode). The processor is the only component that marks entries as
synced.

A single ``asyncio.Lock`` serializes drain passes and online applies:

* ``process_queue`` returns ``{"status": "already_syncing"}`` straight away
  when a pass or an apply holds the lock, and flags a rerun so the holder
  drains once more before releasing it;
* ``apply_now`` waits for the lock, so an online request is never rejected,
  and skips entries a concurrent pass has already synced.

Entries of one session are applied in queue order. Once an entry fails, the
session's later entries are held back until the lock is released.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import SinkError, ValidationError
from app.repositories.sync_queue_repo import SyncQueueRepository
from app.services.session_state import SessionStateMachine
from app.services.sync_sink import ExternalSyncSink

logger = logging.getLogger(__name__)

_EMPTY_PASS = {
    "status": "no_items",
    "synced": 0,
    "errors": 0,
    "exhausted": 0,
    "skipped": 0,
    "total": 0,
}


def _merge(first: Dict[str, Any], second: Dict[str, Any]) -> Dict[str, Any]:
    """Combine the counters of two consecutive passes."""
    merged = {
        key: first.get(key, 0) + second.get(key, 0)
        for key in _EMPTY_PASS
        if key != "status"
    }
    merged["status"] = "completed" if merged["total"] else "no_items"
    return merged


@dataclass
class _Job:
    """Detached snapshot of a queue entry, safe to use across sessions."""

    id: int
    session_id: str
    package_id: str
    action: str
    payload: Dict[str, Any]
    retry_count: int

    @classmethod
    def of(cls, entry) -> "_Job":
        return cls(
            id=entry.id,
            session_id=entry.session_id,
            package_id=entry.package_id,
            action=entry.action,
            payload=dict(entry.payload or {}),
            retry_count=entry.retry_count,
        )


class SyncProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int = 100,
        max_retries: int = 3,
        sink: Optional[ExternalSyncSink] = None,
        sink_timeout: float = 10.0,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.sink = sink
        self.sink_timeout = sink_timeout
        self._lock = asyncio.Lock()
        self._rerun_requested = False

    @property
    def mode(self) -> str:
        return "forward" if self.sink is not None else "local"

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    async def queue_status(self) -> Dict[str, Any]:
        async with self.session_factory() as db:
            return await SyncQueueRepository(db).status(self.max_retries)

    # Drain pass -------------------------------------------------------------

    async def process_queue(self) -> Dict[str, Any]:
        """Run a drain pass over up to ``batch_size`` pending entries.

        A call arriving while the lock is held returns ``already_syncing``
        and asks the holder for one more pass before it releases the lock.
        Entry failures are recorded as retries and never raised.
        """
        if self._lock.locked():
            self._rerun_requested = True
            logger.info("Sync pass requested while another is running")
            return {"status": "already_syncing"}
        async with self._lock:
            blocked: Set[str] = set()
            result = await self._drain_once(blocked)
            more = await self._drain_requested(blocked)
            if more is not None:
                result = _merge(result, more)
            return result

    async def _drain_requested(
        self, blocked: Set[str]
    ) -> Optional[Dict[str, Any]]:
        """Run the passes asked for while the lock was held.

        Sessions in ``blocked`` failed earlier under the same lock and are
        not retried until the next pass.
        """
        result = None
        while self._rerun_requested:
            self._rerun_requested = False
            extra = await self._drain_once(blocked)
            result = extra if result is None else _merge(result, extra)
        return result

    async def _drain_once(self, blocked: Set[str]) -> Dict[str, Any]:
        async with self.session_factory() as db:
            entries = await SyncQueueRepository(db).dequeue_batch(
                self.batch_size, self.max_retries
            )
            jobs = [_Job.of(e) for e in entries]

        if not jobs:
            return dict(_EMPTY_PASS)

        synced = errors = exhausted = skipped = 0
        # a failed session's later entries stay pending so a retry never
        # lands after its successors
        for job in jobs:
            if job.session_id in blocked:
                skipped += 1
                continue
            try:
                await self._run(job)
            except Exception as e:
                errors += 1
                blocked.add(job.session_id)
                if await self._record_failure(job, e) >= self.max_retries:
                    exhausted += 1
            else:
                synced += 1

        logger.info(
            "Sync pass finished (%s mode): %d synced, %d failed, "
            "%d exhausted, %d held back of %d",
            self.mode,
            synced,
            errors,
            exhausted,
            skipped,
            len(jobs),
        )
        return {
            "status": "completed",
            "synced": synced,
            "errors": errors,
            "exhausted": exhausted,
            "skipped": skipped,
            "total": len(jobs),
        }

    # Online apply -----------------------------------------------------------

    async def apply_now(self, entry_id: int) -> Any:
        """Apply one freshly queued entry on behalf of an online request.

        In forward mode, older pending entries of the same session are
        delivered first, in queue order. Returns the dispatch result for the
        entry (the session id for ``initialize``, a ``CommitResult`` for
        ``commit``), or ``None`` when a drain pass had already synced it.
        The first failure is recorded as a retry and re-raised; entries after
        it, the requested one included, are left pending.
        """
        async with self._lock:
            blocked: Set[str] = set()
            try:
                return await self._apply_in_order(entry_id, blocked)
            finally:
                await self._drain_requested(blocked)

    async def _apply_in_order(self, entry_id: int, blocked: Set[str]) -> Any:
        async with self.session_factory() as db:
            queue = SyncQueueRepository(db)
            entry = await queue.get(entry_id)
            if entry.synced:
                return None
            target = _Job.of(entry)
            backlog = []
            if self.sink is not None:
                backlog = [
                    _Job.of(e)
                    for e in await queue.session_backlog(
                        target.session_id, target.id, self.max_retries
                    )
                ]

        for job in backlog + [target]:
            try:
                result = await self._run(job)
            except Exception as e:
                blocked.add(job.session_id)
                await self._record_failure(job, e)
                raise
        return result

    # Internals --------------------------------------------------------------

    async def _run(self, job: _Job) -> Any:
        async with self.session_factory() as db:
            try:
                result = await self._dispatch(db, job)
            except Exception:
                await db.rollback()
                raise
            await SyncQueueRepository(db).mark_synced(job.id)
        return result

    async def _dispatch(self, db: AsyncSession, job: _Job) -> Any:
        if self.sink is not None:
            handler = {
                "initialize": self.sink.apply_initialize,
                "commit": self.sink.apply_commit,
                "terminate": self.sink.apply_terminate,
            }.get(job.action)
            if handler is None:
                raise ValidationError(f"Unknown sync action '{job.action}'")
            try:
                await asyncio.wait_for(
                    handler(job.session_id, job.package_id, job.payload),
                    timeout=self.sink_timeout,
                )
            except asyncio.TimeoutError as e:
                raise SinkError(
                    f"Sync sink timed out after {self.sink_timeout}s "
                    f"on {job.action}",
                    endpoint=job.action,
                ) from e
            return job.session_id if job.action == "initialize" else None

        machine = SessionStateMachine(db)
        if job.action == "initialize":
            return await machine.initialize(
                job.package_id,
                job.payload.get("learnerId"),
                session_id=job.session_id,
            )
        if job.action == "commit":
            return await machine.commit(job.session_id, job.payload)
        if job.action == "terminate":
            return await machine.terminate(job.session_id, job.payload)
        raise ValidationError(f"Unknown sync action '{job.action}'")

    async def _record_failure(self, job: _Job, error: Exception) -> int:
        message = str(error) or error.__class__.__name__
        async with self.session_factory() as db:
            retries = await SyncQueueRepository(db).increment_retry(
                job.id, message
            )
        if retries >= self.max_retries:
            logger.error(
                "Sync entry %d (%s, session %s) exhausted after %d attempts: %s",
                job.id,
                job.action,
                job.session_id,
                retries,
                message,
            )
        else:
            logger.warning(
                "Sync entry %d (%s) failed, attempt %d/%d: %s",
                job.id,
                job.action,
                retries,
                self.max_retries,
                message,
            )
        return retries
