from __future__ import annotations

import threading
import time
from collections.abc import Iterator

import pytest

from upload_dispatcher.common.cancel import CancelToken
from upload_dispatcher.common.errors import UploadFailedError
from upload_dispatcher.domain.enums import AttemptResult
from upload_dispatcher.domain.task import Task
from upload_dispatcher.queue.memory import MemoryTaskQueue
from upload_dispatcher.queue.retry import RetryPolicy
from upload_dispatcher.queue.sql import SqlTaskQueue
from upload_dispatcher.services.dispatcher import Dispatcher
from upload_dispatcher.storage.db import create_store_engine
from upload_dispatcher.transfer.ratelimit import TokenBucket
from upload_dispatcher.uploader.base import UploadCompleted, UploadMetadata, UploadProgress
from upload_dispatcher.uploader.mock import MockUploader


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FailingUploader:
    name = "failing"

    def __init__(self, fail_times: int = 10**9) -> None:
        self.fail_times = fail_times
        self.calls = 0

    def upload(self, *, stream, metadata: UploadMetadata, cancel: CancelToken) -> Iterator:
        self.calls += 1
        stream.read()
        if self.calls <= self.fail_times:
            raise UploadFailedError("remote said no")
        yield UploadCompleted(file_id=f"f{self.calls}")


class _BlockingUploader:
    """Отдаёт один progress и ждёт отмены."""

    name = "blocking"

    def __init__(self) -> None:
        self.started = threading.Event()

    def upload(self, *, stream, metadata: UploadMetadata, cancel: CancelToken) -> Iterator:
        data = stream.read(4)
        yield UploadProgress(bytes_sent=len(data), total_bytes=metadata.size)
        self.started.set()
        cancel.wait(10)
        cancel.raise_if_cancelled()
        yield UploadCompleted(file_id="never")


def _file(tmp_path, name: str, size: int = 16) -> str:
    path = tmp_path / name
    path.write_bytes(b"x" * size)
    return str(path)


def _dispatcher(queue, uploader, **kwargs) -> Dispatcher:
    kwargs.setdefault("poll_interval_sec", 0.01)
    return Dispatcher(queue, uploader, **kwargs)


def test_pass_uploads_in_creation_order_and_deletes(tmp_path) -> None:
    q = MemoryTaskQueue()
    q.create(Task(filename=_file(tmp_path, "b.txt"), create_time=2))
    q.create(Task(filename=_file(tmp_path, "a.txt"), create_time=1, description="first"))
    mock = MockUploader(block_size=4)
    d = _dispatcher(q, mock)

    results = d.run_pass(CancelToken())

    assert results == [AttemptResult.uploaded, AttemptResult.uploaded]
    assert [u.metadata.name for u in mock.uploads] == ["a.txt", "b.txt"]
    assert mock.uploads[0].metadata.description == "first"
    assert mock.uploads[0].metadata.mime_type == "text/plain"
    assert mock.uploads[0].size == 16
    assert q.count() == 0
    assert d.status().current is None


def test_failure_records_attempt_and_backoff(tmp_path) -> None:
    q = MemoryTaskQueue()
    t = q.create(Task(filename=_file(tmp_path, "a.txt")))
    clock = _Clock()
    d = _dispatcher(
        q,
        _FailingUploader(),
        retry_policy=RetryPolicy(max_attempts=5, backoff_base_sec=30.0),
        clock=clock,
    )

    assert d.run_pass(CancelToken()) == [AttemptResult.failed]
    stored = q.get(t.id)
    assert stored.attempts == 1
    assert stored.not_before == pytest.approx(clock.now + 30.0)
    assert "remote said no" in (stored.last_error or "")

    # до not_before задача пропускается
    assert d.run_pass(CancelToken()) == []
    clock.now += 31
    assert d.run_pass(CancelToken()) == [AttemptResult.failed]
    assert q.get(t.id).attempts == 2


def test_failing_task_does_not_block_others(tmp_path) -> None:
    q = MemoryTaskQueue()
    q.create(Task(filename=str(tmp_path / "missing.txt"), create_time=1))
    q.create(Task(filename=_file(tmp_path, "ok.txt"), create_time=2))
    mock = MockUploader()
    d = _dispatcher(q, mock, retry_policy=RetryPolicy(max_attempts=5, backoff_base_sec=60.0))

    assert d.run_pass(CancelToken()) == [AttemptResult.failed, AttemptResult.uploaded]
    assert [u.metadata.name for u in mock.uploads] == ["ok.txt"]
    assert q.count() == 1


def test_dead_letter_after_attempt_ceiling(tmp_path) -> None:
    q = MemoryTaskQueue()
    t = q.create(Task(filename=_file(tmp_path, "a.txt")))
    d = _dispatcher(q, _FailingUploader(), retry_policy=RetryPolicy(max_attempts=2, backoff_base_sec=0))

    assert d.run_pass(CancelToken()) == [AttemptResult.failed]
    assert d.run_pass(CancelToken()) == [AttemptResult.dead_lettered]
    assert q.count() == 0
    dead = q.list_dead_letters()
    assert [x.id for x in dead] == [t.id]
    assert dead[0].attempts == 2


def test_retry_until_removed(tmp_path) -> None:
    q = MemoryTaskQueue()
    q.create(Task(filename=_file(tmp_path, "a.txt")))
    uploader = _FailingUploader(fail_times=3)
    d = _dispatcher(q, uploader, retry_policy=RetryPolicy(max_attempts=0, backoff_base_sec=0))

    for _ in range(10):
        if q.count() == 0:
            break
        d.run_pass(CancelToken())

    assert q.count() == 0
    assert uploader.calls == 4
    assert q.list_dead_letters() == []


def test_paused_dispatcher_does_not_touch_queue(tmp_path) -> None:
    q = MemoryTaskQueue()
    q.create(Task(filename=_file(tmp_path, "a.txt")))
    mock = MockUploader()
    d = _dispatcher(q, mock, start_paused=True)

    assert d.status().paused is True
    assert d.run_pass(CancelToken()) == []
    assert mock.uploads == []
    assert q.count() == 1


def test_pause_cancels_in_flight_upload_without_counting_failure(tmp_path) -> None:
    q = MemoryTaskQueue()
    t = q.create(Task(filename=_file(tmp_path, "a.txt")))
    uploader = _BlockingUploader()
    d = _dispatcher(q, uploader)

    results: list = []
    worker = threading.Thread(target=lambda: results.extend(d.run_pass(CancelToken())))
    worker.start()
    assert uploader.started.wait(5)

    st = d.status()
    assert st.current is not None
    assert st.current.task_id == t.id
    assert st.current.bytes_sent == 4

    st = d.pause()
    worker.join(5)
    assert not worker.is_alive()
    assert st.paused is True
    assert results == [AttemptResult.paused]

    stored = q.get(t.id)
    assert stored.attempts == 0
    assert stored.revision == t.revision
    assert d.status().current is None


def test_pause_and_resume_are_idempotent() -> None:
    d = _dispatcher(MemoryTaskQueue(), MockUploader())
    assert d.pause().paused is True
    assert d.pause().paused is True
    assert d.resume().paused is False
    assert d.resume().paused is False


def test_run_loop_drains_queue_and_stops_on_shutdown(tmp_path) -> None:
    q = MemoryTaskQueue()
    mock = MockUploader()
    d = _dispatcher(q, mock, poll_interval_sec=5.0)
    token = CancelToken()
    worker = threading.Thread(target=d.run, args=(token,))
    worker.start()
    try:
        q.create(Task(filename=_file(tmp_path, "a.txt")))
        d.wake()
        deadline = time.monotonic() + 5
        while q.count() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert q.count() == 0
    finally:
        token.cancel("shutdown")
        worker.join(5)
    assert not worker.is_alive()
    assert len(mock.uploads) == 1


def test_shutdown_during_upload_leaves_task_untouched(tmp_path) -> None:
    q = MemoryTaskQueue()
    t = q.create(Task(filename=_file(tmp_path, "a.txt")))
    uploader = _BlockingUploader()
    d = _dispatcher(q, uploader)
    token = CancelToken()
    worker = threading.Thread(target=d.run, args=(token,))
    worker.start()

    assert uploader.started.wait(5)
    token.cancel("shutdown")
    worker.join(5)

    assert not worker.is_alive()
    stored = q.get(t.id)
    assert stored.attempts == 0
    assert stored.revision == t.revision


def test_paused_run_loop_wakes_on_shutdown() -> None:
    d = _dispatcher(MemoryTaskQueue(), MockUploader(), start_paused=True)
    token = CancelToken()
    worker = threading.Thread(target=d.run, args=(token,))
    worker.start()
    time.sleep(0.05)
    token.cancel("shutdown")
    worker.join(5)
    assert not worker.is_alive()


def test_task_removed_during_upload_is_not_fatal(tmp_path) -> None:
    q = MemoryTaskQueue()
    q.create(Task(filename=_file(tmp_path, "a.txt")))

    class _DeletingUploader:
        name = "deleting"

        def upload(self, *, stream, metadata, cancel):
            for t in q.list():
                q.delete(t)
            yield UploadCompleted(file_id="f1")

    d = _dispatcher(q, _DeletingUploader())
    assert d.run_pass(CancelToken()) == [AttemptResult.uploaded]
    assert q.count() == 0


@pytest.mark.parametrize("backend", ["mem", "sql"])
def test_task_abandoned_mid_pass_is_not_uploaded(tmp_path, backend) -> None:
    if backend == "mem":
        q = MemoryTaskQueue()
    else:
        q = SqlTaskQueue(create_store_engine(f"sqlite:///{tmp_path / 'tasks.db'}"))
    q.create(Task(filename=_file(tmp_path, "a.txt"), create_time=1))
    abandoned = q.create(Task(filename=_file(tmp_path, "b.txt"), create_time=2))

    class _AbandoningUploader(MockUploader):
        def upload(self, *, stream, metadata, cancel):
            if metadata.name == "a.txt":
                q.delete(q.get(abandoned.id))
            yield from super().upload(stream=stream, metadata=metadata, cancel=cancel)

    mock = _AbandoningUploader(block_size=4)
    d = _dispatcher(q, mock)

    assert d.run_pass(CancelToken()) == [AttemptResult.uploaded]
    assert [u.metadata.name for u in mock.uploads] == ["a.txt"]
    assert q.count() == 0
    q.close()


def test_shared_bucket_throttles_uploads(tmp_path) -> None:
    q = MemoryTaskQueue()
    q.create(Task(filename=_file(tmp_path, "a.bin", size=3000), create_time=1))
    q.create(Task(filename=_file(tmp_path, "b.bin", size=1000), create_time=2))
    d = _dispatcher(
        q,
        MockUploader(block_size=500),
        bucket=TokenBucket(rate=10_000, capacity=1000),
    )

    started = time.monotonic()
    d.run_pass(CancelToken())
    elapsed = time.monotonic() - started

    # (4000 - 1000) / 10000 = 0.3s на обе задачи
    assert elapsed >= 0.25
    assert q.count() == 0
