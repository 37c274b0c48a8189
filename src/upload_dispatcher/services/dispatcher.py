"""
Диспетчер загрузок.

Назначение:
- обходит очередь в порядке create_time и загружает задачи по одной
- общий для всех попыток ограничитель скорости (один бюджет исходящего канала)
- pause/resume/status для HTTP-управления

Цикл run():
1) на паузе - ждём resume (очередь не трогаем)
2) проход по query_ordered_by_creation(), задачи с not_before в будущем пропускаем
3) успех -> delete; NotFound/ConflictingRevision при удалении не фатальны
4) отмена по паузе -> задача не трогается (первой пойдёт после resume)
   отмена по shutdown -> задача не трогается, run() выходит
5) прочие ошибки -> RetryPolicy: record_failure с backoff или DLQ
6) после прохода - простой DISPATCHER_POLL_INTERVAL_SEC (прерывается wake/pause/resume/shutdown)

Потоки:
- run() крутится в одном рабочем потоке
- pause/resume/status/wake вызываются из потоков HTTP
- всё общее состояние под одним threading.Condition
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

from upload_dispatcher.common.cancel import CANCEL_REASON_PAUSE, CancelToken
from upload_dispatcher.common.config import Settings
from upload_dispatcher.common.errors import (
    AppError,
    ConflictingRevisionError,
    NotFoundError,
    OperationCancelled,
    UploadFailedError,
)
from upload_dispatcher.common.logging import get_dispatcher_logger
from upload_dispatcher.common.metrics import (
    record_upload_attempt,
    set_dispatcher_paused,
    track_upload_latency,
)
from upload_dispatcher.domain.enums import AttemptResult
from upload_dispatcher.domain.task import DispatcherStatus, Task, TaskStatus
from upload_dispatcher.queue.base import TaskQueue
from upload_dispatcher.queue.retry import RetryPolicy
from upload_dispatcher.transfer.ratelimit import RateLimitedReader, TokenBucket
from upload_dispatcher.uploader.base import (
    UploadCompleted,
    Uploader,
    UploadMetadata,
    UploadProgress,
)

log = get_dispatcher_logger()


def describe_error(err: BaseException) -> str:
    if isinstance(err, AppError):
        text = f"{err.code}: {err.message}"
        if err.details:
            text += f" {err.details}"
    else:
        text = f"{type(err).__name__}: {err}"
    return text[:500]


class Dispatcher:
    def __init__(
        self,
        queue: TaskQueue,
        uploader: Uploader,
        *,
        bucket: TokenBucket | None = None,
        retry_policy: RetryPolicy | None = None,
        poll_interval_sec: float = 1.0,
        start_paused: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._uploader = uploader
        self._bucket = bucket or TokenBucket(rate=0, capacity=0)
        self._retry = retry_policy or RetryPolicy()
        self._poll_interval_sec = max(0.0, float(poll_interval_sec))
        self._clock = clock
        self.provider = str(getattr(uploader, "name", type(uploader).__name__))

        self._cond = threading.Condition()
        self._paused = bool(start_paused)
        self._wake_pending = False
        self._current: TaskStatus | None = None
        self._attempt_token: CancelToken | None = None
        set_dispatcher_paused(self._paused)

    @classmethod
    def from_settings(cls, queue: TaskQueue, uploader: Uploader, s: Settings) -> Dispatcher:
        return cls(
            queue,
            uploader,
            bucket=TokenBucket(
                rate=float(s.upload_rate_bytes_per_sec),
                capacity=int(s.upload_rate_capacity_bytes),
            ),
            retry_policy=RetryPolicy.from_settings(s),
            poll_interval_sec=float(s.dispatcher_poll_interval_sec),
            start_paused=bool(s.dispatcher_start_paused),
        )

    # -------------------------------------------------------------------------
    # Управление
    # -------------------------------------------------------------------------
    def pause(self) -> DispatcherStatus:
        with self._cond:
            changed = not self._paused
            self._paused = True
            token = self._attempt_token
            self._cond.notify_all()
        # отмена вне блокировки: колбэки токена не должны ждать Condition
        if token is not None:
            token.cancel(CANCEL_REASON_PAUSE)
        set_dispatcher_paused(True)
        if changed:
            log.info("dispatcher_paused", extra={"payload": {"in_flight": token is not None}})
        return self.status()

    def resume(self) -> DispatcherStatus:
        with self._cond:
            changed = self._paused
            self._paused = False
            self._wake_pending = True
            self._cond.notify_all()
        set_dispatcher_paused(False)
        if changed:
            log.info("dispatcher_resumed")
        return self.status()

    def wake(self) -> None:
        with self._cond:
            self._wake_pending = True
            self._cond.notify_all()

    def status(self) -> DispatcherStatus:
        with self._cond:
            return DispatcherStatus(paused=self._paused, current=self._current)

    # -------------------------------------------------------------------------
    # Цикл
    # -------------------------------------------------------------------------
    def _notify(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def run(self, cancel: CancelToken) -> None:
        """
        Главный цикл. Возвращается только после отмены cancel.
        """
        unsubscribe = cancel.add_callback(self._notify)
        log.info(
            "dispatcher_started",
            extra={"payload": {"provider": self.provider, "paused": self.status().paused}},
        )
        try:
            while not cancel.cancelled:
                with self._cond:
                    while self._paused and not cancel.cancelled:
                        self._cond.wait()
                if cancel.cancelled:
                    break

                try:
                    self.run_pass(cancel)
                except OperationCancelled as e:
                    if cancel.cancelled:
                        break
                    log.warning("dispatcher_pass_cancelled", extra={"payload": {"reason": e.reason}})
                except Exception as e:
                    log.error(
                        "dispatcher_pass_failed",
                        extra={"payload": {"err": describe_error(e)}},
                        exc_info=True,
                    )

                self._idle(cancel)
        finally:
            unsubscribe()
            log.info("dispatcher_stopped", extra={"payload": {"reason": cancel.reason}})

    def _idle(self, cancel: CancelToken) -> None:
        with self._cond:
            if not self._wake_pending and not self._paused and not cancel.cancelled:
                self._cond.wait_for(
                    lambda: self._wake_pending or self._paused or cancel.cancelled,
                    timeout=self._poll_interval_sec,
                )
            self._wake_pending = False

    def run_pass(self, cancel: CancelToken) -> list[AttemptResult]:
        """
        Один проход по очереди. Возвращает исходы попыток в порядке выполнения.
        На паузе проход обрывается, при shutdown летит OperationCancelled.
        """
        results: list[AttemptResult] = []
        for task in self._queue.query_ordered_by_creation():
            cancel.raise_if_cancelled()
            with self._cond:
                if self._paused:
                    break
            if not RetryPolicy.is_due(task, now=self._clock()):
                continue

            result = self._attempt(task, cancel)
            results.append(result)
            if result == AttemptResult.paused:
                break
        return results

    # -------------------------------------------------------------------------
    # Одна попытка
    # -------------------------------------------------------------------------
    def _attempt(self, task: Task, outer: CancelToken) -> AttemptResult:
        with self._cond:
            if self._paused:
                return AttemptResult.paused
            token = outer.derive()
            self._attempt_token = token
            self._current = TaskStatus(task_id=task.id, filename=task.filename)

        try:
            return self._execute(task, token, outer)
        finally:
            with self._cond:
                self._attempt_token = None
                self._current = None
            token.close()

    def _execute(self, task: Task, token: CancelToken, outer: CancelToken) -> AttemptResult:
        log.info(
            "task_upload_started",
            extra={
                "payload": {
                    "task_id": task.id,
                    "filename": task.filename,
                    "attempt": task.attempts + 1,
                }
            },
        )
        try:
            with track_upload_latency(self.provider):
                completed, sent = self._transfer(task, token)
        except OperationCancelled as e:
            if outer.cancelled:
                record_upload_attempt(provider=self.provider, result=AttemptResult.cancelled.value)
                log.info(
                    "task_upload_cancelled",
                    extra={"payload": {"task_id": task.id, "reason": outer.reason}},
                )
                raise
            if token.reason == CANCEL_REASON_PAUSE:
                record_upload_attempt(provider=self.provider, result=AttemptResult.paused.value)
                log.info("task_upload_paused", extra={"payload": {"task_id": task.id}})
                return AttemptResult.paused
            return self._on_failure(task, e)
        except Exception as e:
            return self._on_failure(task, e)

        self._on_success(task, completed, sent)
        return AttemptResult.uploaded

    def _transfer(self, task: Task, token: CancelToken) -> tuple[UploadCompleted, int]:
        path = Path(task.filename)
        try:
            size = path.stat().st_size
            raw = path.open("rb")
        except OSError as e:
            raise UploadFailedError(
                "Не удалось открыть файл", {"filename": task.filename, "err": str(e)[:200]}
            ) from e

        metadata = UploadMetadata(
            name=task.basename,
            description=task.description,
            parents=list(task.parents),
            mime_type=task.resolve_mime_type(),
            size=size,
        )
        reader = RateLimitedReader(raw, self._bucket, cancel=token)
        completed: UploadCompleted | None = None
        try:
            events = self._uploader.upload(stream=reader, metadata=metadata, cancel=token)
            for event in events:
                if isinstance(event, UploadProgress):
                    with self._cond:
                        self._current = TaskStatus(
                            task_id=task.id,
                            filename=task.filename,
                            bytes_sent=event.bytes_sent,
                            total_bytes=event.total_bytes,
                        )
                elif isinstance(event, UploadCompleted):
                    completed = event
        finally:
            reader.close()

        if completed is None:
            raise UploadFailedError("Загрузчик завершился без результата", {"task_id": task.id})
        return completed, reader.bytes_read

    def _on_success(self, task: Task, completed: UploadCompleted, sent: int) -> None:
        record_upload_attempt(
            provider=self.provider, result=AttemptResult.uploaded.value, uploaded_bytes=sent
        )
        log.info(
            "task_uploaded",
            extra={
                "payload": {
                    "task_id": task.id,
                    "filename": task.filename,
                    "file_id": completed.file_id,
                    "url": completed.url,
                    "bytes": sent,
                }
            },
        )
        try:
            self._queue.delete(task)
        except (NotFoundError, ConflictingRevisionError) as e:
            log.warning(
                "task_delete_skipped",
                extra={"payload": {"task_id": task.id, "err": describe_error(e)}},
            )

    def _on_failure(self, task: Task, err: BaseException) -> AttemptResult:
        decision = self._retry.on_failure(task, now=self._clock())
        error = describe_error(err)
        try:
            if decision.retry:
                self._queue.record_failure(task, error=error, not_before=decision.not_before)
            else:
                self._queue.dead_letter(task, reason=error)
        except (NotFoundError, ConflictingRevisionError) as e:
            log.warning(
                "task_failure_not_recorded",
                extra={"payload": {"task_id": task.id, "err": describe_error(e)}},
            )
            record_upload_attempt(provider=self.provider, result=AttemptResult.failed.value)
            return AttemptResult.failed

        if decision.retry:
            record_upload_attempt(provider=self.provider, result=AttemptResult.failed.value)
            log.warning(
                "task_upload_failed",
                extra={
                    "payload": {
                        "task_id": task.id,
                        "attempts": decision.attempts,
                        "retry_in_sec": decision.delay_sec,
                        "err": error,
                    }
                },
            )
            return AttemptResult.failed

        record_upload_attempt(provider=self.provider, result=AttemptResult.dead_lettered.value)
        log.error(
            "task_dead_lettered",
            extra={"payload": {"task_id": task.id, "attempts": decision.attempts, "err": error}},
        )
        return AttemptResult.dead_lettered
