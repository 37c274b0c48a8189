"""
Утилиты времени.

Назначение:
- наносекундные метки создания задач (ключ сортировки очереди)
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime

_create_lock = threading.Lock()
_last_create_ns = 0


def next_create_time_ns() -> int:
    """
    Метка создания задачи в наносекундах.

    Строго возрастает в пределах процесса: две задачи, созданные подряд,
    никогда не получат одинаковую метку (даже при грубом системном таймере).
    """
    global _last_create_ns
    with _create_lock:
        now = time.time_ns()
        if now <= _last_create_ns:
            now = _last_create_ns + 1
        _last_create_ns = now
        return now


def ns_to_datetime(ns: int) -> datetime:
    return datetime.fromtimestamp(ns / 1_000_000_000, tz=UTC)