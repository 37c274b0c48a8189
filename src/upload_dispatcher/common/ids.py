"""
Генерация идентификаторов.

Назначение:
- task_id для ключа задачи в хранилище
- revision - токен оптимистичной блокировки
"""

from __future__ import annotations

import secrets
import uuid


def new_task_id() -> str:
    """UUIDv4 без дефисов."""
    return uuid.uuid4().hex


def new_revision() -> str:
    """
    Непрозрачный токен ревизии.
    Выдаётся хранилищем при каждой записи, клиенты его не сочиняют.
    """
    return secrets.token_hex(12)

