"""
Ограничение скорости исходящего потока (token bucket).

Семантика:
- ведро стартует полным (capacity байт)
- пополняется непрерывно со скоростью rate байт/с
- чтение N байт забирает N токенов; если токенов не хватает - читатель ждёт
- крупное чтение уводит ведро "в минус", ожидание гасит долг
- rate <= 0 или capacity <= 0 - ограничение выключено

Итог: передача N байт занимает не меньше (N - capacity) / rate секунд.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import BinaryIO

from upload_dispatcher.common.cancel import CancelToken


class TokenBucket:
    def __init__(
        self,
        rate: float,
        capacity: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = float(rate)
        self.capacity = int(capacity)
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(max(0, self.capacity))
        self._last = clock()

    @property
    def enabled(self) -> bool:
        return self.rate > 0 and self.capacity > 0

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._last = now
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)

    def take(self, n: int) -> float:
        """
        Забрать n токенов. Возвращает, сколько секунд нужно подождать,
        прежде чем использовать эти байты.
        """
        if not self.enabled or n <= 0:
            return 0.0
        with self._lock:
            self._refill(self._clock())
            self._tokens -= n
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    def wait(self, n: int, cancel: CancelToken | None = None) -> None:
        delay = self.take(n)
        if delay <= 0:
            return
        if cancel is not None:
            cancel.sleep(delay)
        else:
            time.sleep(delay)


class RateLimitedReader:
    """
    Обёртка над бинарным потоком: каждое read() проходит через TokenBucket.

    Ожидание токенов отменяемо через cancel (OperationCancelled).
    """

    def __init__(
        self,
        raw: BinaryIO,
        bucket: TokenBucket,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        self._raw = raw
        self._bucket = bucket
        self._cancel = cancel
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        if self._cancel is not None:
            self._cancel.raise_if_cancelled()
        data = self._raw.read(size)
        if data:
            self.bytes_read += len(data)
            self._bucket.wait(len(data), self._cancel)
        return data

    def close(self) -> None:
        self._raw.close()
