from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from apps.api_gateway.routers.dead_letters import router as dead_letters_router
from apps.api_gateway.routers.tasks import router as tasks_router
from upload_dispatcher.common.config import get_settings
from upload_dispatcher.common.errors import StoreUnavailableError
from upload_dispatcher.queue.memory import MemoryTaskQueue
from upload_dispatcher.services.dispatcher import Dispatcher
from upload_dispatcher.services.runtime import Runtime
from upload_dispatcher.uploader.mock import MockUploader


@pytest.fixture()
def auth_none():
    s = get_settings()
    snapshot = (s.app_env, s.auth_mode)
    try:
        s.app_env = "dev"
        s.auth_mode = "none"
        yield s
    finally:
        s.app_env, s.auth_mode = snapshot


def _client(queue: MemoryTaskQueue) -> TestClient:
    app = FastAPI()
    app.state.runtime = Runtime(
        queue=queue, dispatcher=Dispatcher(queue, MockUploader()), worker_enabled=False
    )
    app.include_router(tasks_router)
    app.include_router(dead_letters_router)
    return TestClient(app)


def test_create_list_get_delete(auth_none) -> None:
    client = _client(MemoryTaskQueue())

    resp = client.post(
        "/tasks",
        json={"filename": "/data/a.txt", "description": "d", "parents": ["p1"], "mimeType": "text/x"},
    )
    assert resp.status_code == 201
    body = resp.json()
    task_id = body["id"]
    assert body["filename"] == "/data/a.txt"
    assert body["parents"] == ["p1"]
    assert body["mimeType"] == "text/x"
    assert body["createTime"] > 0
    assert body["createdAt"]
    assert body["attempts"] == 0

    listed = client.get("/tasks").json()["tasks"]
    assert [t["id"] for t in listed] == [task_id]

    assert client.get(f"/tasks/{task_id}").json()["description"] == "d"

    assert client.delete(f"/tasks/{task_id}").status_code == 204
    missing = client.get(f"/tasks/{task_id}")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"
    assert client.delete(f"/tasks/{task_id}").status_code == 404


def test_create_without_filename_is_bad_request(auth_none) -> None:
    client = _client(MemoryTaskQueue())
    resp = client.post("/tasks", json={"description": "no file"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "invalid_task"


def test_duplicate_filename_key_is_conflict(auth_none) -> None:
    client = _client(MemoryTaskQueue(key_field="filename"))
    assert client.post("/tasks", json={"filename": "/data/a.txt"}).status_code == 201
    resp = client.post("/tasks", json={"filename": "/data/a.txt"})
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "already_exists"


def test_filename_ids_with_slashes_are_addressable(auth_none) -> None:
    client = _client(MemoryTaskQueue(key_field="filename"))
    client.post("/tasks", json={"filename": "data/sub/a.txt"})
    assert client.get("/tasks/data/sub/a.txt").json()["id"] == "data/sub/a.txt"


def test_store_unavailable_is_503(auth_none, monkeypatch) -> None:
    queue = MemoryTaskQueue()

    def _down():
        raise StoreUnavailableError("Redis недоступен")

    monkeypatch.setattr(queue, "list", _down)
    resp = _client(queue).get("/tasks")
    assert resp.status_code == 503
    assert resp.json()["detail"]["code"] == "store_unavailable"


def test_dead_letters_requeue_and_discard(auth_none) -> None:
    queue = MemoryTaskQueue()
    client = _client(queue)
    task_id = client.post("/tasks", json={"filename": "/data/a.txt"}).json()["id"]
    queue.dead_letter(queue.get(task_id), reason="upload_failed: 403")

    assert client.get("/tasks").json()["tasks"] == []
    dead = client.get("/dead-letters").json()["deadLetters"]
    assert [d["id"] for d in dead] == [task_id]
    assert dead[0]["deadReason"] == "upload_failed: 403"
    assert dead[0]["attempts"] == 1

    resp = client.post(f"/dead-letters/{task_id}/requeue")
    assert resp.status_code == 200
    assert resp.json()["attempts"] == 0
    assert [t["id"] for t in client.get("/tasks").json()["tasks"]] == [task_id]

    assert client.delete(f"/dead-letters/{task_id}").status_code == 404
    queue.dead_letter(queue.get(task_id), reason="again")
    assert client.delete(f"/dead-letters/{task_id}").status_code == 204
    assert client.get("/dead-letters").json()["deadLetters"] == []
