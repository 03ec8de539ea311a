"""HTTP and WebSocket tests against the app with an in-memory store."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from relay.main import create_app
from relay.models import JobState


@pytest.fixture
def client(settings, store, make_launcher):
    app = create_app(settings, store, launcher=make_launcher())
    with TestClient(app) as c:
        yield c


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.text == "ok"


def test_lifespan_opens_store(client, store):
    assert store.opened


def test_start_stop_cycle(client, store):
    r = client.post("/api/v1/outputs/1/start")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body == {"id": 1, "endpoint_url": "rtsp://localhost:8554/Lobby-Wall", "port": 8554}
    assert client.get("/api/v1/outputs/active").json() == {"active": [1]}
    assert store.jobs[1].state is JobState.RUNNING

    r = client.post("/api/v1/outputs/1/stop")
    assert r.json() == {"id": 1, "stopped": True}
    assert client.get("/api/v1/outputs/active").json() == {"active": []}
    assert store.jobs[1].state is JobState.STOPPED

    r = client.post("/api/v1/outputs/1/stop")
    assert r.json() == {"id": 1, "stopped": False}


def test_stop_all(client):
    client.post("/api/v1/outputs/1/start")
    client.post("/api/v1/outputs/2/start")
    r = client.post("/api/v1/outputs/stop-all")
    assert r.json() == {"stopped": [1, 2]}


def test_unknown_job_is_404(client):
    r = client.post("/api/v1/outputs/99/start")
    assert r.status_code == 404
    assert r.json()["error"] == "NotFoundError"


def test_unmapped_job_is_400(client, store):
    r = client.post("/api/v1/outputs/3/start")
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "NoMappingsError"
    assert body["phase"] == "load"
    assert store.jobs[3].state is JobState.ERROR


def test_double_start_is_409(client):
    assert client.post("/api/v1/outputs/2/start").status_code == 200
    assert client.post("/api/v1/outputs/2/start").status_code == 409


def test_pipeline_preview_does_not_start(client, store):
    r = client.get("/api/v1/outputs/1/pipeline")
    assert r.status_code == 200
    body = r.json()
    assert body["engine"] == "ffmpeg"
    assert "-filter_complex" in body["command"]
    assert "<port>" in body["command"]
    assert "s3cret" not in r.text
    kinds = [s["kind"] for s in body["description"]["stages"]]
    assert kinds.count("decode") == 3
    assert kinds[-2:] == ["composite", "encode"]
    assert client.get("/api/v1/outputs/active").json() == {"active": []}
    assert store.history == []


def test_pipeline_preview_of_live_job_uses_its_port(client):
    client.post("/api/v1/outputs/2/start")
    body = client.get("/api/v1/outputs/2/pipeline").json()
    assert body["command"].endswith("rtsp://localhost:8554/Ops")


def test_stale_jobs_reset_on_startup(settings, store, make_launcher):
    store.jobs[2] = store.jobs[2].model_copy(update={"state": JobState.RUNNING, "output_port": 8554})
    with TestClient(create_app(settings, store, launcher=make_launcher())):
        pass
    assert store.jobs[2].state is JobState.STOPPED
    assert store.jobs[2].output_port is None
    assert store.jobs[2].last_error == "interrupted by service restart"


def test_shutdown_stops_live_jobs(settings, store, make_launcher):
    with TestClient(create_app(settings, store, launcher=make_launcher())) as c:
        c.post("/api/v1/outputs/1/start")
    assert store.jobs[1].state is JobState.STOPPED
    assert store.jobs[1].output_port is None


class TestObserverSocket:

    def test_connected_then_snapshot(self, client):
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"
            snap = ws.receive_json()
            assert snap["type"] == "snapshot"
            assert [o["id"] for o in snap["outputs"]] == [1, 2, 3]

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.receive_json()
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_unknown_and_invalid_messages(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.receive_json()
            ws.send_json({"type": "subscribe"})
            assert ws.receive_json() == {"type": "error", "message": "Unknown message type"}
            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}

    def test_lifecycle_events_pushed(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.receive_json()
            client.post("/api/v1/outputs/2/start")
            msg = ws.receive_json()
            assert msg["type"] == "event"
            assert msg["eventType"] == "started"
            assert msg["jobId"] == 2
            assert msg["detail"]["port"] == 8554


def test_invalid_stored_settings_is_400(client, store):
    store.add_row(4, slots={0: 1}, bitrate="fast")
    r = client.post("/api/v1/outputs/4/start")
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "ConfigurationError"
    assert body["phase"] == "load"
    assert "bitrate" in body["detail"]
    assert store.rows[4]["status"] == "error"
