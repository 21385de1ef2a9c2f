import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from main import create_app
from service.exceptions import StorageUnavailableError


@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(str(tmp_path / "data"))) as client:
        yield client


def create_code(client, name=None):
    response = client.post("/api/codes", json={"name": name})
    assert response.status_code == 201
    return response.json()["code"]


def test_generate_validate_revoke_reactivate(client):
    code = create_code(client, "Alice")

    body = client.get("/api/codes/validate", params={"code": code.lower()}).json()
    assert body == {"valid": True, "record": {"code": code, "name": "Alice"}}

    assert client.patch(f"/api/codes/{code}/status", json={"status": "revoked"}).status_code == 200
    assert client.get("/api/codes/validate", params={"code": code}).json() == {"valid": False, "reason": "revoked"}

    client.patch(f"/api/codes/{code}/status", json={"status": "active"})
    assert client.get("/api/codes/validate", params={"code": code}).json()["valid"] is True

    assert client.get("/api/codes/validate", params={"code": "NOPE2345"}).json() == {
        "valid": False, "reason": "not_found"}


def test_validate_records_each_attempt(client):
    code = create_code(client)

    client.get("/api/codes/validate", params={"code": code}, headers={"User-Agent": "Firefox"})
    client.get("/api/codes/validate", params={"code": "NOPE2345"},
               headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})

    attempts = client.app.state.storage.list_validation_attempts()
    assert [(a["code"], a["valid"]) for a in attempts] == [(code, True), ("NOPE2345", False)]
    assert attempts[0]["ip_address"] == "testclient"
    assert attempts[0]["user_agent"] == "Firefox"
    assert attempts[1]["ip_address"] == "203.0.113.9"


def test_bulk_generation_and_naming(client):
    response = client.post("/api/codes/bulk", json={"count": 3, "names": ["Group "]})
    assert response.status_code == 201
    body = response.json()
    assert [item["name"] for item in body["items"]] == ["Group1", "Group2", "Group3"]

    codes = body["codes"]
    response = client.patch("/api/codes/names", json={"codes": codes, "names": ["A", "", "C"], "overwrite": True})
    assert response.json() == {"renamed": 3}
    assert client.get(f"/api/codes/{codes[1].lower()}").json()["name"] == ""

    assert client.post("/api/codes/bulk", json={"count": 0}).status_code == 422
    assert client.post("/api/codes/bulk", json={"count": 1001}).status_code == 422


def test_rename_and_delete(client):
    code = create_code(client, "Before")
    client.patch(f"/api/codes/{code}/name", json={"name": "After"})
    assert client.get(f"/api/codes/{code}").json()["name"] == "After"

    assert client.post("/api/codes/delete", json={"codes": [code, "NOPE2345"]}).json() == {"deleted": 1}
    assert client.post("/api/codes/delete", json={"codes": [code]}).json() == {"deleted": 0}
    assert client.get(f"/api/codes/{code}").status_code == 404


def test_upload_and_export(client):
    upload = 'Code,Name\nabcd2345,"Smith, Bob"\n efgh6789 ,\n,orphan\n'
    response = client.post("/api/codes/upload", content=upload, headers={"Content-Type": "text/csv"})
    assert response.json() == {"inserted": 2, "updated": 0, "skipped": 1}

    response = client.post("/api/codes/import", json={"items": [{"code": "efgh6789", "name": "Eve"}, {"name": "x"}]})
    assert response.status_code == 200
    assert response.json() == {"inserted": 0, "updated": 1, "skipped": 1}

    response = client.get("/api/codes/export")
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.splitlines()
    assert lines[0] == "code,name"
    assert sorted(lines[1:]) == ['ABCD2345,"Smith, Bob"', "EFGH6789,Eve"]

    assert client.post("/api/codes/upload", content="", headers={"Content-Type": "text/csv"}).status_code == 400


def test_list_codes_by_status(client):
    active = create_code(client)
    revoked = create_code(client)
    client.patch(f"/api/codes/{revoked}/status", json={"status": "revoked"})

    assert [c["code"] for c in client.get("/api/codes", params={"status": "active"}).json()] == [active]
    assert len(client.get("/api/codes").json()) == 2
    assert client.get("/health").json()["active_codes"] == 1


def test_session_creation_reasons(client):
    code = create_code(client)

    response = client.post("/api/sessions", json={"room_name": "math", "access_code": code})
    assert response.status_code == 201
    session_id = response.json()["id"]

    missing = client.post("/api/sessions", json={"room_name": "math", "access_code": "NOPE2345"})
    assert missing.status_code == 404
    assert missing.json()["detail"]["reason"] == "not_found"

    client.patch(f"/api/codes/{code}/status", json={"status": "revoked"})
    revoked = client.post("/api/sessions", json={"room_name": "math", "access_code": code})
    assert revoked.status_code == 403
    assert revoked.json()["detail"]["reason"] == "revoked"

    assert [s["id"] for s in client.get("/api/sessions", params={"room": "math"}).json()] == [session_id]


def test_session_participants_and_end(client):
    code = create_code(client)
    session_id = client.post("/api/sessions", json={"room_name": "math", "access_code": code}).json()["id"]

    client.post(f"/api/sessions/{session_id}/participants", json={"participant_id": "p1", "display_name": "Bob"})
    info = client.get(f"/api/sessions/{session_id}").json()
    assert info["participant_count"] == 1
    assert info["participants"][0]["participant_id"] == "p1"

    assert client.delete(f"/api/sessions/{session_id}/participants/p1").json() == {"removed": True}
    assert client.post(f"/api/sessions/{session_id}/end").json()["status"] == "ended"
    assert client.post(f"/api/sessions/{session_id}/end").status_code == 200
    assert client.get("/api/sessions/missing").status_code == 404


def test_websocket_session_flow(client):
    code = create_code(client)

    with client.websocket_connect(f"/ws/rooms/math?code={code.lower()}&display_name=Ms%20Smith") as ws:
        created = ws.receive_json()
        assert created["type"] == "session-created"
        session_id = created["session"]["id"]

        ws.send_json({"type": "engine-event", "event": "videoConferenceJoined", "id": "me"})
        update = ws.receive_json()
        assert update["type"] == "participants-updated"
        assert update["state"] == "active"
        assert [(p["id"], p["display_name"], p["is_local"]) for p in update["participants"]] == [("me", "Ms Smith", True)]

        ws.send_json({"type": "engine-event", "event": "participantJoined", "id": "p2", "displayName": "Bob"})
        update = ws.receive_json()
        assert [p["id"] for p in update["participants"]] == ["me", "p2"]

        ws.send_json({"type": "engine-event", "event": "unknown"})
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "toggle-audio"})
        assert ws.receive_json() == {"type": "command", "command": "setAudioMuted", "muted": True}

        ws.send_json({"type": "hangup"})
        assert ws.receive_json() == {"type": "command", "command": "hangup"}
        ended = ws.receive_json()
        assert ended["type"] == "session-ended"
        assert ended["reason"] == "hangup"

    assert client.get(f"/api/sessions/{session_id}").json()["session"]["status"] == "ended"
    assert client.get("/health").json()["total_connections"] == 0


def test_websocket_rejects_revoked_code(client):
    code = create_code(client)
    client.patch(f"/api/codes/{code}/status", json={"status": "revoked"})

    with client.websocket_connect(f"/ws/rooms/math?code={code}") as ws:
        assert ws.receive_json()["reason"] == "revoked"
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4403


def test_websocket_rejects_unknown_code(client):
    with client.websocket_connect("/ws/rooms/math?code=NOPE2345") as ws:
        assert ws.receive_json()["reason"] == "not_found"
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4404


def test_websocket_closes_when_session_cannot_be_stored(client, monkeypatch):
    code = create_code(client)

    def unavailable(room_name, access_code):
        raise StorageUnavailableError("disk full")

    monkeypatch.setattr(client.app.state.storage, "create_session", unavailable)
    with client.websocket_connect(f"/ws/rooms/math?code={code}") as ws:
        assert ws.receive_json()["reason"] == "unavailable"
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 1013
