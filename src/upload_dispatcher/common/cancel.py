"""
Токены отмены.

Назначение:
- кооперативная отмена блокирующих операций (ожидание токенов, I/O, простой)
- иерархия: токен попытки загрузки порождается от внешнего токена процесса
  и отменяется либо вместе с ним (shutdown), либо отдельно (pause)

Важно:
- реализация на threading (диспетчер работает в отдельном потоке)
- дочерний токен нужно закрыть (close), иначе он останется подписан на родителя
"""

from __future__ import annotations

import threading
from collections.abc import Callable

from .errors import OperationCancelled

CANCEL_REASON_SHUTDOWN = "shutdown"
CANCEL_REASON_PAUSE = "pause"


class CancelToken:
    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_cb_id = 0
        self._unlink: Callable[[], None] | None = None
        if parent is not None:
            self._unlink = parent.add_callback(lambda: self.cancel(parent.reason or "cancelled"))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for cb in callbacks:
            cb()

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """
        Подписка на отмену. Если токен уже отменён - cb вызывается сразу.
        Возвращает функцию отписки.
        """
        with self._lock:
            if not self._event.is_set():
                cb_id = self._next_cb_id
                self._next_cb_id += 1
                self._callbacks[cb_id] = cb

                def _remove() -> None:
                    with self._lock:
                        self._callbacks.pop(cb_id, None)

                return _remove
        cb()
        return lambda: None

    def derive(self) -> CancelToken:
        return CancelToken(parent=self)

    def close(self) -> None:
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    def wait(self, timeout: float | None = None) -> bool:
        """True, если токен отменён до истечения timeout."""
        return self._event.wait(timeout)

    def sleep(self, seconds: float) -> None:
        """Отменяемый sleep: бросает OperationCancelled при отмене."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        if self._event.wait(seconds):
            raise OperationCancelled(self._reason or "cancelled")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason or "cancelled")
