from __future__ import annotations


def _create(client, call_id: str = "CA1", **extra):
    body = {"callId": call_id, "peerNumber": "+15551234", **extra}
    return client.post("/api/calls", json=body)


def test_create_call_returns_initiated_record(client):
    response = _create(client, metadata={"campaign": "spring"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["call"]["callId"] == "CA1"
    assert payload["call"]["status"] == "initiated"
    assert payload["call"]["metadata"] == {"campaign": "spring"}
    assert payload["call"]["events"][0]["kind"] == "initiated"


def test_create_call_without_peer_number_is_rejected(client):
    response = client.post("/api/calls", json={"callId": "CA1"})
    assert response.status_code == 400
    assert response.json()["detail"] == "peerNumber is required"

    listing = client.get("/api/calls")
    assert listing.json() == {"calls": []}


def test_create_duplicate_call_conflicts(client):
    assert _create(client).status_code == 200
    response = _create(client)
    assert response.status_code == 409


def test_get_unknown_call_returns_404(client):
    response = client.get("/api/calls/CA-unknown")
    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_status_push_follows_the_lifecycle(client):
    _create(client)

    response = client.put("/api/calls/CA1", json={"status": "ringing", "event": "provider_ringing"})
    assert response.status_code == 200
    assert response.json()["call"]["status"] == "ringing"

    response = client.put("/api/calls/CA1", json={"status": "in-progress"})
    assert response.status_code == 200
    assert response.json()["call"]["status"] == "in_progress"

    response = client.put("/api/calls/CA1", json={"status": "ringing"})
    assert response.status_code == 409

    call = client.get("/api/calls/CA1").json()["call"]
    assert [event["kind"] for event in call["events"]] == ["initiated", "provider_ringing", "in_progress"]


def test_status_push_cannot_complete_a_call(client):
    _create(client)
    response = client.put("/api/calls/CA1", json={"status": "completed"})
    assert response.status_code == 400


def test_failed_call_leaves_active_list_but_stays_queryable(client):
    _create(client)
    response = client.put("/api/calls/CA1", json={"status": "failed", "event": "call_failed"})
    assert response.status_code == 200
    assert response.json()["call"]["endedAt"] is not None

    assert client.get("/api/calls").json() == {"calls": []}
    assert client.get("/api/calls/CA1").json()["call"]["status"] == "failed"


def test_status_push_for_unknown_call_returns_404(client):
    response = client.put("/api/calls/CA404", json={"status": "ringing"})
    assert response.status_code == 404


def test_monitor_receives_initial_snapshot_and_updates(client):
    _create(client, "CA1")

    with client.websocket_connect("/api/monitor") as ws:
        initial = ws.receive_json()
        assert initial["type"] == "initial"
        assert [call["callId"] for call in initial["calls"]] == ["CA1"]

        _create(client, "CA2")
        created = ws.receive_json()
        assert created["type"] == "call_initiated"
        assert created["data"]["callId"] == "CA2"

        client.put("/api/calls/CA2", json={"status": "ringing"})
        updated = ws.receive_json()
        assert updated["type"] == "call_updated"
        assert updated["data"]["status"] == "ringing"
