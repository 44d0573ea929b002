import pytest

from app.exceptions import NotFoundError, ValidationError
from app.repositories.interaction_repo import InteractionRepository
from app.repositories.session_repo import SessionRepository
from app.services.session_state import (
    SessionState,
    SessionStateMachine,
    derive_summary,
    extract_interactions,
    normalize_commit_payload,
)


@pytest.fixture
def machine(db):
    return SessionStateMachine(db)


# Pure helpers -----------------------------------------------------------------


def test_normalize_wraps_bare_cmi_object():
    assert normalize_commit_payload({"location": "p1"}) == {
        "cmi": {"location": "p1"}
    }
    assert normalize_commit_payload({"cmi": {"location": "p1"}, "adl": {}}) == {
        "cmi": {"location": "p1"},
        "adl": {},
    }
    assert normalize_commit_payload(None) == {}


def test_derive_summary_scorm_2004():
    fields = derive_summary(
        {
            "cmi": {
                "completion_status": "completed",
                "success_status": "passed",
                "score": {"raw": 85, "min": "0", "max": 100},
                "session_time": "PT10M",
            }
        }
    )
    assert fields == {
        "completed": True,
        "success_status": "passed",
        "score_raw": 85.0,
        "score_min": 0.0,
        "score_max": 100.0,
        "session_time": "PT10M",
    }


def test_derive_summary_scorm_12():
    fields = derive_summary(
        {"core": {"lesson_status": "passed", "score": {"raw": "72"}}}
    )
    assert fields == {
        "completed": True,
        "success_status": "passed",
        "score_raw": 72.0,
    }


def test_newer_field_takes_precedence_over_legacy():
    fields = derive_summary(
        {
            "cmi": {
                "completion_status": "incomplete",
                "core": {"lesson_status": "passed"},
            }
        }
    )
    assert fields["completed"] is False
    # no 2004 success_status, so the 1.2 status is used
    assert fields["success_status"] == "passed"


def test_derive_summary_ignores_non_numeric_score_and_unknown_status():
    fields = derive_summary(
        {"cmi": {"score": {"raw": "lots"}, "success_status": "brilliant"}}
    )
    assert "score_raw" not in fields
    assert fields["success_status"] == "unknown"


def test_extract_interactions_handles_lists_objects_and_aliases():
    rows = extract_interactions(
        {
            "cmi": {
                "interactions": {
                    "0": {"id": "q1", "student_response": "a", "time": "10:00"},
                    "1": {"type": "choice"},
                }
            }
        }
    )
    assert rows == [
        {"interaction_id": "q1", "timestamp": "10:00", "learner_response": "a"}
    ]


# State machine ----------------------------------------------------------------


async def test_initialize_creates_active_session(machine, package_id):
    session_id = await machine.initialize(package_id, "learner-1")
    record = await machine.get_session(session_id)
    assert record.state == SessionState.ACTIVE.value
    assert record.learner_id == "learner-1"


async def test_initialize_replay_returns_existing_id(machine, package_id):
    first = await machine.initialize(package_id, "l1", session_id="fixed-id")
    second = await machine.initialize(package_id, "l1", session_id="fixed-id")
    assert first == second == "fixed-id"
    assert len(await machine.sessions_for_package(package_id)) == 1


async def test_scenario_completion_and_score(machine, package_id):
    session_id = await machine.initialize(package_id, "l1")
    result = await machine.commit(
        session_id, {"completion_status": "completed", "score": {"raw": 85}}
    )
    assert result.summary_updated is True
    assert result.records_written == 2
    record = await machine.get_session(session_id)
    assert record.completed is True
    assert record.score_raw == 85
    assert record.state == SessionState.COMMITTED.value


async def test_scenario_legacy_lesson_status(machine, package_id):
    session_id = await machine.initialize(package_id, "l1")
    await machine.commit(session_id, {"cmi": {"core": {"lesson_status": "passed"}}})
    record = await machine.get_session(session_id)
    assert record.completed is True
    assert record.success_status == "passed"


async def test_replaying_commit_is_idempotent(machine, package_id):
    session_id = await machine.initialize(package_id, "l1")
    payload = {"cmi": {"completion_status": "completed", "score": {"raw": 60}}}
    await machine.commit(session_id, payload)
    before = (await machine.get_session(session_id)).to_dict()
    await machine.commit(session_id, payload)
    after = (await machine.get_session(session_id)).to_dict()
    for key in ("completed", "successStatus", "score", "sessionTime"):
        assert before[key] == after[key]


async def test_absent_fields_leave_summary_untouched(machine, package_id):
    session_id = await machine.initialize(package_id, "l1")
    await machine.commit(session_id, {"score": {"raw": 50}})
    await machine.commit(session_id, {"location": "page2"})
    assert (await machine.get_session(session_id)).score_raw == 50


async def test_commit_upserts_interactions(machine, db, package_id):
    session_id = await machine.initialize(package_id, "l1")
    await machine.commit(
        session_id,
        {"interactions": [{"id": "q1", "result": "wrong", "type": "choice"}]},
    )
    await machine.commit(session_id, {"interactions": [{"id": "q1", "result": "correct"}]})
    rows = await InteractionRepository(db).list(session_id)
    assert [(r.interaction_id, r.result, r.type) for r in rows] == [
        ("q1", "correct", "choice")
    ]


async def test_terminate_freezes_summary_but_keeps_writes(machine, package_id):
    session_id = await machine.initialize(package_id, "l1")
    await machine.terminate(session_id, {"score": {"raw": 40}})
    record = await machine.get_session(session_id)
    assert record.state == SessionState.TERMINATED.value
    assert record.terminated_at is not None
    terminated_at = record.terminated_at

    result = await machine.commit(session_id, {"score": {"raw": 99}})
    assert result.summary_updated is False
    record = await machine.get_session(session_id)
    assert record.score_raw == 40
    assert await machine.get_value(session_id, "cmi.score.raw") == "99"

    await machine.terminate(session_id)
    assert (await machine.get_session(session_id)).terminated_at == terminated_at


async def test_unknown_session_raises_not_found(machine):
    with pytest.raises(NotFoundError):
        await machine.commit("missing", {"location": "x"})
    with pytest.raises(NotFoundError):
        await machine.terminate("missing")
    assert await machine.load_initial_data("missing") is None


async def test_set_value_flattens_under_element(machine, package_id):
    session_id = await machine.initialize(package_id, "l1")
    written = await machine.set_value(session_id, "cmi.score", {"raw": 10, "max": 20})
    assert written == 2
    assert await machine.get_value(session_id, "cmi.score.max") == "20"
    with pytest.raises(ValidationError):
        await machine.set_value(session_id, "cmi..score", 1)


async def test_load_initial_data(machine, package_id):
    session_id = await machine.initialize(package_id, "l1")
    await machine.commit(
        session_id,
        {"suspend_data": "abc", "interactions": [{"id": "q1", "result": "correct"}]},
    )
    data = await machine.load_initial_data(session_id)
    assert data["session"]["suspendData"] == "abc"
    assert data["cmi"]["cmi"]["suspend_data"] == "abc"
    assert data["interactions"][0]["id"] == "q1"


async def test_sessions_for_learner(machine, package_id):
    await machine.initialize(package_id, "alice")
    await machine.initialize(package_id, "alice")
    await machine.initialize(package_id, "bob")
    assert len(await machine.sessions_for_learner("alice")) == 2


async def test_initialize_replay_activates_session_left_in_created(
    machine, db, package_id
):
    await SessionRepository(db).create(
        session_id="half-open",
        package_id=package_id,
        learner_id="l1",
        state=SessionState.CREATED.value,
    )
    session_id = await machine.initialize(package_id, "l1", session_id="half-open")
    assert session_id == "half-open"
    assert (await machine.get_session("half-open")).state == "active"

    await machine.terminate(
        "half-open", {"cmi": {"completion_status": "completed"}}
    )
    record = await machine.get_session("half-open")
    assert record.state == "terminated"
    assert record.completed is True


async def test_created_session_can_commit_or_terminate(machine, db, package_id):
    sessions = SessionRepository(db)
    for session_id in ("c1", "c2"):
        await sessions.create(
            session_id=session_id,
            package_id=package_id,
            learner_id=None,
            state=SessionState.CREATED.value,
        )
    await machine.commit("c1", {"location": "p1"})
    assert (await machine.get_session("c1")).state == "committed"
    await machine.terminate("c2", None)
    assert (await machine.get_session("c2")).state == "terminated"
