from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from apps.api_gateway.routers.control import router as control_router
from upload_dispatcher.common.config import get_settings
from upload_dispatcher.domain.task import TaskStatus
from upload_dispatcher.queue.memory import MemoryTaskQueue
from upload_dispatcher.services.dispatcher import Dispatcher
from upload_dispatcher.services.runtime import Runtime
from upload_dispatcher.uploader.mock import MockUploader


@pytest.fixture()
def auth_settings():
    s = get_settings()
    snapshot = {k: getattr(s, k) for k in ("app_env", "auth_mode", "api_keys")}
    try:
        s.app_env = "dev"
        s.auth_mode = "none"
        yield s
    finally:
        for k, v in snapshot.items():
            setattr(s, k, v)


def _app() -> tuple[FastAPI, Dispatcher]:
    queue = MemoryTaskQueue()
    dispatcher = Dispatcher(queue, MockUploader())
    app = FastAPI()
    app.state.runtime = Runtime(queue=queue, dispatcher=dispatcher, worker_enabled=False)
    app.include_router(control_router)
    return app, dispatcher


def test_status_pause_resume(auth_settings) -> None:
    app, _ = _app()
    client = TestClient(app)

    assert client.get("/status").json() == {"paused": False}
    assert client.post("/pause").json() == {"paused": True}
    assert client.post("/pause").json() == {"paused": True}
    assert client.get("/status").json() == {"paused": True}
    assert client.post("/resume").json() == {"paused": False}
    assert client.post("/resume").json() == {"paused": False}


def test_status_reports_in_flight_progress(auth_settings, monkeypatch) -> None:
    app, dispatcher = _app()
    monkeypatch.setattr(
        dispatcher,
        "_current",
        TaskStatus(task_id="t1", filename="/data/a.bin", bytes_sent=50, total_bytes=200),
    )

    body = TestClient(app).get("/status").json()
    assert body == {
        "paused": False,
        "progress": {"percent": 25.0, "bytesSent": 50, "totalBytes": 200},
        "task": {"id": "t1", "filename": "/data/a.bin"},
    }


def test_api_key_mode_requires_header(auth_settings) -> None:
    auth_settings.auth_mode = "api_key"
    auth_settings.api_keys = "k1,k2"
    app, _ = _app()
    client = TestClient(app)

    denied = client.get("/status")
    assert denied.status_code == 401
    assert denied.json()["detail"]["code"] == "unauthorized"
    assert client.get("/status", headers={"X-API-Key": "bad"}).status_code == 401
    assert client.post("/pause", headers={"X-API-Key": "k2"}).json() == {"paused": True}
