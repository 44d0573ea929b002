import pytest

from conftest import SwitchableSink, assert_response_error, assert_response_success


@pytest.fixture
def sink():
    return SwitchableSink(available=False)


def _batch(actions, session_id="offline-session-1", package_id="pkg-1"):
    return {"sessionId": session_id, "packageId": package_id, "actions": actions}


OFFLINE_ACTIONS = [
    {"kind": "initialize", "payload": {"learnerId": "l1"}, "timestamp": "2026-05-01T10:00:00Z"},
    {"kind": "commit", "payload": {"cmi": {"location": "p3"}}, "timestamp": "2026-05-01T10:05:00Z"},
    {"kind": "terminate", "payload": {}, "timestamp": "2026-05-01T10:09:00Z"},
]


async def test_offline_batch_syncs_once_sink_recovers(client, sink):
    response = await client.post("/api/v1/sync/upload", json=_batch(OFFLINE_ACTIONS))
    assert_response_success(response)
    body = response.json()
    assert body["queued"] == 3
    assert body["sync"]["errors"] == 3

    status = (await client.get("/api/v1/sync/status")).json()
    assert status["pending"] == 3
    assert status["mode"] == "forward"

    sink.available = True
    response = await client.post("/api/v1/sync/trigger")
    assert response.json()["synced"] == 3

    status = (await client.get("/api/v1/sync/status")).json()
    assert status["pending"] == 0
    assert status["synced"] == 3
    assert [call[0] for call in sink.calls] == ["initialize", "commit", "terminate"]


async def test_actions_sorted_by_client_timestamp_with_aliases(client, sink):
    sink.available = True
    actions = [
        {"type": "commit", "data": {"location": "late"}, "timestamp": "2026-05-01T10:05:00+02:00"},
        {"type": "initialize", "data": {}, "timestamp": "2026-05-01T07:00:00Z"},
    ]
    response = await client.post("/api/v1/sync/upload", json=_batch(actions))
    assert_response_success(response)
    assert [call[0] for call in sink.calls] == ["initialize", "commit"]
    assert sink.calls[1][2] == {"location": "late"}


async def test_online_commit_with_sink_down_stays_queued(client, sink):
    response = await client.post(
        "/api/v1/scorm/pkg-1/initialize", json={"learnerId": "l1"}
    )
    assert_response_success(response)
    assert response.json()["synced"] is False

    response = await client.get("/api/v1/sync/entries", params={"state": "pending"})
    entries = response.json()
    assert len(entries) == 1
    assert entries[0]["retryCount"] == 1
    assert entries[0]["lastError"]


async def test_exhausted_entry_can_be_rearmed(client, sink):
    await client.post(
        "/api/v1/sync/upload", json=_batch([{"kind": "commit", "payload": {}}])
    )
    await client.post("/api/v1/sync/trigger")
    await client.post("/api/v1/sync/trigger")

    exhausted = (await client.get("/api/v1/sync/entries", params={"state": "exhausted"})).json()
    assert len(exhausted) == 1
    assert exhausted[0]["exhausted"] is True
    assert (await client.post("/api/v1/sync/trigger")).json()["status"] == "no_items"

    response = await client.post(f"/api/v1/sync/entries/{exhausted[0]['id']}/rearm")
    assert_response_success(response)
    assert response.json()["entry"]["retryCount"] == 0

    sink.available = True
    assert (await client.post("/api/v1/sync/trigger")).json()["synced"] == 1


async def test_upload_validation(client, settings):
    response = await client.post("/api/v1/sync/upload", json=_batch([]))
    assert_response_error(response, 400)

    too_many = [{"kind": "commit", "payload": {}}] * (settings.max_batch_actions + 1)
    response = await client.post("/api/v1/sync/upload", json=_batch(too_many))
    assert_response_error(response, 413)

    response = await client.post(
        "/api/v1/sync/upload",
        json=_batch([{"kind": "commit", "payload": {"interactions": "nope"}}]),
    )
    assert_response_error(response, 400)

    big = {"suspend_data": "x" * (settings.max_payload_bytes + 1)}
    response = await client.post(
        "/api/v1/sync/upload", json=_batch([{"kind": "commit", "payload": big}])
    )
    assert_response_error(response, 413)

    response = await client.post(
        "/api/v1/sync/upload", json=_batch([{"kind": "launch", "payload": {}}])
    )
    assert_response_error(response, 422)

    status = (await client.get("/api/v1/sync/status")).json()
    assert status["pending"] == 0


async def test_auto_sync_start_and_stop(client):
    response = await client.post("/api/v1/sync/auto-sync/start", json={"intervalSeconds": 30})
    assert_response_success(response)
    assert response.json()["autoSyncActive"] is True
    assert response.json()["intervalSeconds"] == 30

    response = await client.post("/api/v1/sync/auto-sync/stop")
    assert response.json()["autoSyncActive"] is False


async def test_unknown_entry_state(client):
    response = await client.get("/api/v1/sync/entries", params={"state": "lost"})
    assert_response_error(response, 400)
