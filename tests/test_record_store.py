import pytest

from app.exceptions import ValidationError
from app.repositories.record_repo import RecordRepository
from app.services.session_state import SessionStateMachine


@pytest.fixture
async def session_id(db, package_id):
    return await SessionStateMachine(db).initialize(package_id, "learner-1")


async def test_read_latest_returns_last_write(db, session_id):
    repo = RecordRepository(db)
    for location in ("page1", "page2", "page3"):
        await repo.write(session_id, "cmi.location", location)
    assert await repo.read_latest(session_id, "cmi.location") == "page3"
    assert await repo.count(session_id) == 3


async def test_read_latest_unknown_path(db, session_id):
    assert await RecordRepository(db).read_latest(session_id, "cmi.nope") is None


async def test_same_batch_ties_broken_by_insert_order(db, session_id):
    repo = RecordRepository(db)
    written = await repo.write_many(
        session_id,
        [("cmi.location", "a"), ("cmi.location", "b")],
    )
    assert written == 2
    assert await repo.read_latest(session_id, "cmi.location") == "b"


async def test_read_all_rebuilds_tree(db, session_id):
    repo = RecordRepository(db)
    await repo.write_many(
        session_id,
        [
            ("cmi.score.raw", "70"),
            ("cmi.interactions.0.id", "q1"),
            ("cmi.interactions.1.id", "q2"),
        ],
    )
    await repo.write(session_id, "cmi.score.raw", "85")
    assert await repo.read_all(session_id) == {
        "cmi": {
            "score": {"raw": "85"},
            "interactions": [{"id": "q1"}, {"id": "q2"}],
        }
    }


async def test_write_rejects_malformed_path(db, session_id):
    with pytest.raises(ValidationError):
        await RecordRepository(db).write(session_id, "cmi..location", "x")
