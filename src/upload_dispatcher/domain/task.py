"""
Задача загрузки и снимки статуса.

Назначение:
- Task - одна ожидающая загрузка (локальный файл + метаданные назначения)
- сериализация в запись хранилища (JSON-совместимый dict)
- ленивое определение MIME по расширению (в момент выполнения, не создания)
- TaskStatus / DispatcherStatus - read-only снимки для /status
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from upload_dispatcher.common.time import ns_to_datetime


def normalize_parents(parents: Any) -> list[str]:
    """
    Упорядоченное множество id папок назначения: без пустых и без дублей.
    """
    if not parents:
        return []
    if isinstance(parents, str):
        parents = [parents]
    out: list[str] = []
    for p in parents:
        value = str(p).strip()
        if value and value not in out:
            out.append(value)
    return out


@dataclass
class Task:
    filename: str
    description: str = ""
    parents: list[str] = field(default_factory=list)
    mime_type: str = ""
    create_time: int = 0

    id: str = ""
    revision: str | None = None

    # Ретраи
    attempts: int = 0
    last_error: str | None = None
    not_before: float | None = None

    # DLQ
    dead_reason: str | None = None
    dead_at: float | None = None

    def created_at(self) -> datetime:
        return ns_to_datetime(self.create_time)

    @property
    def basename(self) -> str:
        return Path(self.filename).name

    def resolve_mime_type(self) -> str:
        """
        MIME для загрузки: явный, иначе по расширению файла.
        Вычисляется при каждой попытке, в задачу не записывается.
        """
        if self.mime_type:
            return self.mime_type
        guessed, _ = mimetypes.guess_type(self.basename)
        return guessed or ""

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "description": self.description,
            "parents": list(self.parents),
            "mime_type": self.mime_type,
            "create_time": int(self.create_time),
            "attempts": int(self.attempts),
            "last_error": self.last_error,
            "not_before": self.not_before,
            "revision": self.revision,
            "dead_reason": self.dead_reason,
            "dead_at": self.dead_at,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> Task:
        not_before = data.get("not_before")
        dead_at = data.get("dead_at")
        return cls(
            id=str(data.get("id") or ""),
            filename=str(data.get("filename") or ""),
            description=str(data.get("description") or ""),
            parents=normalize_parents(data.get("parents")),
            mime_type=str(data.get("mime_type") or ""),
            create_time=int(data.get("create_time") or 0),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error"),
            not_before=float(not_before) if not_before is not None else None,
            revision=data.get("revision"),
            dead_reason=data.get("dead_reason"),
            dead_at=float(dead_at) if dead_at is not None else None,
        )


@dataclass(frozen=True)
class TaskStatus:
    """
    Прогресс текущей (in-flight) задачи.
    """

    task_id: str
    filename: str
    bytes_sent: int = 0
    total_bytes: int = 0

    @property
    def percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return round(self.bytes_sent / self.total_bytes * 100.0, 2)


@dataclass(frozen=True)
class DispatcherStatus:
    paused: bool
    current: TaskStatus | None = None
