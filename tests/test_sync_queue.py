from datetime import datetime

import pytest

from app.exceptions import ValidationError
from app.repositories.sync_queue_repo import (
    SyncEntryNotFoundError,
    SyncQueueRepository,
)


@pytest.fixture
def queue(db):
    return SyncQueueRepository(db)


async def test_enqueue_commits_pending_entry(queue, session_factory):
    entry = await queue.enqueue("s1", "p1", "commit", {"location": "x"})
    async with session_factory() as other:
        stored = await SyncQueueRepository(other).get(entry.id)
    assert stored.synced is False
    assert stored.retry_count == 0
    assert stored.payload == {"location": "x"}


async def test_dequeue_is_fifo(queue):
    first = await queue.enqueue("s1", "p1", "initialize", {})
    second = await queue.enqueue("s1", "p1", "commit", {})
    third = await queue.enqueue("s1", "p1", "terminate", {})
    batch = await queue.dequeue_batch(10, max_retries=3)
    assert [e.id for e in batch] == [first.id, second.id, third.id]
    assert [e.id for e in await queue.dequeue_batch(2, max_retries=3)] == [
        first.id,
        second.id,
    ]


async def test_enqueue_many_keeps_order(queue):
    entries = await queue.enqueue_many(
        [
            {
                "session_id": "s1",
                "package_id": "p1",
                "action": kind,
                "payload": {},
                "recorded_at": datetime(2026, 1, 1, 10, minute),
            }
            for minute, kind in enumerate(["initialize", "commit", "terminate"])
        ]
    )
    batch = await queue.dequeue_batch(10, max_retries=3)
    assert [e.action for e in batch] == ["initialize", "commit", "terminate"]
    assert [e.id for e in batch] == [e.id for e in entries]


async def test_mark_synced_only_once(queue):
    entry = await queue.enqueue("s1", "p1", "commit", {})
    assert await queue.mark_synced(entry.id) is True
    assert await queue.mark_synced(entry.id) is False
    assert (await queue.get(entry.id)).synced_at is not None
    assert await queue.dequeue_batch(10, max_retries=3) == []


async def test_exhausted_entries_leave_batches_but_count_as_pending(queue):
    entry = await queue.enqueue("s1", "p1", "commit", {})
    for attempt in range(1, 4):
        assert await queue.increment_retry(entry.id, "boom") == attempt
    assert await queue.dequeue_batch(10, max_retries=3) == []

    status = await queue.status(max_retries=3)
    assert status == {
        "pending": 1,
        "synced": 0,
        "exhausted": 1,
        "byAction": {"commit": 1},
    }
    exhausted = await queue.list_entries("exhausted", max_retries=3)
    assert [e.id for e in exhausted] == [entry.id]
    assert exhausted[0].last_error == "boom"


async def test_rearm_gives_fresh_retry_budget(queue):
    entry = await queue.enqueue("s1", "p1", "commit", {})
    for _ in range(3):
        await queue.increment_retry(entry.id, "boom")
    rearmed = await queue.rearm(entry.id)
    assert rearmed.retry_count == 0
    assert [e.id for e in await queue.dequeue_batch(10, max_retries=3)] == [entry.id]


async def test_rearm_rejects_synced_and_unknown(queue):
    entry = await queue.enqueue("s1", "p1", "commit", {})
    await queue.mark_synced(entry.id)
    with pytest.raises(ValidationError):
        await queue.rearm(entry.id)
    with pytest.raises(SyncEntryNotFoundError):
        await queue.rearm(9999)


async def test_status_counts_by_action(queue):
    await queue.enqueue("s1", "p1", "initialize", {})
    await queue.enqueue("s1", "p1", "commit", {})
    synced = await queue.enqueue("s1", "p1", "commit", {})
    await queue.mark_synced(synced.id)
    status = await queue.status(max_retries=3)
    assert status["pending"] == 2
    assert status["synced"] == 1
    assert status["byAction"] == {"initialize": 1, "commit": 1}


async def test_list_entries_rejects_unknown_state(queue):
    with pytest.raises(ValidationError):
        await queue.list_entries("weird", max_retries=3)
