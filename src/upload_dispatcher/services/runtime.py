"""
Сборка процесса: настройки -> очередь + загрузчик + диспетчер.

Назначение:
- единственная точка, где выбираются бэкенд очереди и провайдер загрузчика
- владеет рабочим потоком диспетчера и внешним токеном отмены (shutdown)
"""

from __future__ import annotations

import threading

from upload_dispatcher.common.cancel import CANCEL_REASON_SHUTDOWN, CancelToken
from upload_dispatcher.common.config import Settings, get_settings
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.queue.base import TaskQueue
from upload_dispatcher.queue.registry import StoreRegistry, open_task_queue
from upload_dispatcher.uploader.base import Uploader
from upload_dispatcher.uploader.factory import build_uploader

from .dispatcher import Dispatcher

log = get_project_logger()


class Runtime:
    def __init__(
        self,
        *,
        queue: TaskQueue,
        dispatcher: Dispatcher,
        worker_enabled: bool = True,
    ) -> None:
        self.queue = queue
        self.dispatcher = dispatcher
        self.worker_enabled = worker_enabled
        self._cancel: CancelToken | None = None
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        registry: StoreRegistry | None = None,
        uploader: Uploader | None = None,
    ) -> Runtime:
        s = settings or get_settings()
        queue = open_task_queue(s.store_url, localfile=s.store_localfile, registry=registry)
        dispatcher = Dispatcher.from_settings(queue, uploader or build_uploader(s), s)
        return cls(queue=queue, dispatcher=dispatcher, worker_enabled=bool(s.dispatcher_enabled))

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if not self.worker_enabled:
            log.info("dispatcher_worker_disabled")
            return
        if self.running:
            return
        self._cancel = CancelToken()
        self._thread = threading.Thread(
            target=self._run, args=(self._cancel,), name="upload-dispatcher", daemon=True
        )
        self._thread.start()

    def _run(self, cancel: CancelToken) -> None:
        try:
            self.dispatcher.run(cancel)
        except Exception:
            log.exception("dispatcher_worker_crashed")

    def stop(self, timeout: float = 10.0) -> None:
        if self._cancel is not None:
            self._cancel.cancel(CANCEL_REASON_SHUTDOWN)
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                log.warning("dispatcher_worker_stop_timeout", extra={"payload": {"timeout": timeout}})
        self._thread = None
        self._cancel = None
        self.queue.close()
