from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import FakeCamera, face
from face_companion.companion import CompanionService
from face_companion.exceptions import ModelLoadError
from face_companion.web_app import create_web_app


def make_service(db, notifier, enrichment, camera_factory):
    return CompanionService(
        db=db,
        notifier=notifier,
        enrichment=enrichment,
        camera_factory=camera_factory,
        owner_id="owner-1",
        interval=60,
    )


@pytest.fixture
def client(db, notifier, enrichment):
    camera = FakeCamera(script=[[face(0.5, 0.5)]])
    app = create_web_app(make_service(db, notifier, enrichment, lambda: camera))
    with TestClient(app) as test_client:
        yield test_client


def test_state_endpoint(client):
    response = client.get("/api/state")
    assert response.status_code == 200
    body = response.json()
    assert body["loop_active"] is False
    assert body["encounter_state"] == "scanning"
    assert body["reminders_running"] is True
    assert body["audio_enabled"] is True


def test_task_lifecycle(client):
    when = (datetime.now().astimezone() + timedelta(hours=2)).isoformat()
    created = client.post("/api/tasks", json={"name": "Take medicine", "scheduled_time": when, "location": "kitchen"})
    assert created.status_code == 200
    task = created.json()["task"]
    assert task["status"] == "pending"

    listed = client.get("/api/tasks").json()["tasks"]
    assert [t["id"] for t in listed] == [task["id"]]

    done = client.post(f"/api/tasks/{task['id']}/status", json={"status": "completed"})
    assert done.json()["task"]["status"] == "completed"
    assert client.get("/api/tasks", params={"status": "pending"}).json()["tasks"] == []

    reminded = client.post(f"/api/tasks/{task['id']}/remind")
    assert reminded.json() == {"ok": True, "spoken": True}

    assert client.delete(f"/api/tasks/{task['id']}").status_code == 200
    assert client.delete(f"/api/tasks/{task['id']}").status_code == 404
    assert client.post("/api/tasks/missing/remind").status_code == 404
    assert client.post("/api/tasks/missing/status", json={"status": "skipped"}).status_code == 404


def test_invalid_task_payloads(client):
    assert client.post("/api/tasks", json={"name": "   ", "scheduled_time": "2024-05-01T09:00:00"}).status_code == 400
    assert client.post("/api/tasks", json={"name": "Walk", "scheduled_time": "soon"}).status_code == 422


def test_save_without_capture_is_rejected(client):
    response = client.post("/api/save/request")
    assert response.status_code == 400
    assert "no unknown face" in response.json()["detail"]

    response = client.post("/api/save", json={"name": "Bob"})
    assert response.status_code == 400


def test_capture_and_save_flow(client):
    assert client.post("/api/capture").status_code == 400

    assert client.post("/api/loop/start").json() == {"ok": True, "started": True}
    captured = client.post("/api/capture")
    assert captured.status_code == 200
    assert captured.json()["pending"]["preview_b64"]

    saved = client.post("/api/save", json={"name": "Bob", "relationship": "friend"})
    assert saved.status_code == 200
    assert saved.json()["person"]["has_face_data"] is True

    people = client.get("/api/people").json()["people"]
    assert [p["name"] for p in people] == ["Bob"]

    assert client.post("/api/loop/stop").json() == {"ok": True, "stopped": True}
    assert client.post("/api/loop/stop").json() == {"ok": True, "stopped": False}


def test_cancel_and_audio_and_reminder_controls(client):
    assert client.post("/api/save/cancel").json() == {"ok": True}
    assert client.post("/api/audio", json={"enabled": False}).json() == {"ok": True, "audio_enabled": False}
    assert client.get("/api/state").json()["audio_enabled"] is False
    assert client.post("/api/reminders/reset").json() == {"ok": True}
    assert client.post("/api/reminders/stop").json() == {"ok": True}
    assert client.post("/api/reminders/start", json={"lead_minutes": 10}).json() == {"ok": True, "running": True}
    assert client.get("/api/encounters").json() == {"encounters": []}


def test_session_fatal_error_maps_to_503(db, notifier, enrichment):
    def broken_factory():
        raise ModelLoadError("Face recognition models could not be loaded from any source.")

    app = create_web_app(make_service(db, notifier, enrichment, broken_factory))
    with TestClient(app) as client:
        response = client.post("/api/loop/start")
        assert response.status_code == 503
        assert client.get("/api/state").json()["error"].startswith("Face recognition models")
