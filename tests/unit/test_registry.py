from __future__ import annotations

import pytest

from upload_dispatcher.common.errors import StoreConfigError
from upload_dispatcher.queue.memory import MemoryTaskQueue
from upload_dispatcher.queue.redis import split_redis_url
from upload_dispatcher.queue.registry import (
    OpenOptions,
    StoreRegistry,
    default_registry,
    open_task_queue,
    url_scheme,
)
from upload_dispatcher.queue.sql import SqlTaskQueue


def test_url_scheme_strips_driver() -> None:
    assert url_scheme("postgresql+psycopg://u@h/db") == "postgresql"
    assert url_scheme("mem://collection/id") == "mem"
    assert url_scheme("") == ""


def test_mem_url_key_field_from_last_segment(tmp_path) -> None:
    q = open_task_queue("mem://collection/Filename")
    assert isinstance(q, MemoryTaskQueue)
    assert q.key_field == "filename"

    q2 = open_task_queue("mem://collection", localfile=str(tmp_path / "q.json"))
    assert q2.key_field == "id"


def test_sqlite_url_with_key_field(tmp_path) -> None:
    q = open_task_queue(f"sqlite:///{tmp_path / 'tasks.db'}?key_field=filename")
    try:
        assert isinstance(q, SqlTaskQueue)
        assert q.key_field == "filename"
    finally:
        q.close()


def test_unknown_scheme_is_config_error() -> None:
    with pytest.raises(StoreConfigError):
        open_task_queue("ftp://example.com/queue")


def test_bad_key_field_is_config_error() -> None:
    with pytest.raises(StoreConfigError):
        open_task_queue("mem://collection/owner")


def test_registries_are_independent() -> None:
    calls = []

    def _factory(url: str, options: OpenOptions):
        calls.append((url, options.localfile))
        return MemoryTaskQueue()

    custom = StoreRegistry()
    custom.register("custom", _factory)
    open_task_queue("custom://x", localfile="/tmp/q.json", registry=custom)
    assert calls == [("custom://x", "/tmp/q.json")]

    assert "custom" not in default_registry().schemes()
    with pytest.raises(StoreConfigError):
        open_task_queue("mem://collection/id", registry=custom)


def test_split_redis_url_keeps_connection_params() -> None:
    clean, own = split_redis_url(
        "redis://localhost:6379/2?collection=uploads&key_field=filename&socket_timeout=5"
    )
    assert clean == "redis://localhost:6379/2?socket_timeout=5"
    assert own == {"collection": "uploads", "key_field": "filename"}
