"""
Доменные перечисления (enum).
"""

from __future__ import annotations

import enum


class AttemptResult(str, enum.Enum):
    """
    Исход одной попытки выполнения задачи (метки логов/метрик).
    """

    uploaded = "uploaded"
    failed = "failed"
    dead_lettered = "dead_lettered"
    paused = "paused"
    cancelled = "cancelled"
