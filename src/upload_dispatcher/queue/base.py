"""
Контракт очереди задач (TaskQueue).

Назначение:
- персистентная коллекция Task с ключом id и токеном ревизии
- упорядоченный обход по create_time (FIFO)
- DLQ для задач, исчерпавших попытки

Правила для реализаций:
- наружу не торчат типы конкретного бэкенда (redis/sqlalchemy)
- ошибки носителя -> StoreUnavailableError
- запись с устаревшей ревизией -> ConflictingRevisionError
- обращение к отсутствующей задаче -> NotFoundError
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from collections.abc import Iterator

from upload_dispatcher.common.errors import InvalidTaskError, StoreConfigError
from upload_dispatcher.common.ids import new_revision, new_task_id
from upload_dispatcher.common.time import next_create_time_ns
from upload_dispatcher.domain.task import Task, normalize_parents

KEY_FIELDS = ("id", "filename")


def normalize_key_field(raw: str | None) -> str:
    """
    Поле-ключ записи: id (по умолчанию) или filename.
    Регистр не важен (mem://collection/Filename == filename).
    """
    value = (raw or "id").strip().lower()
    if value not in KEY_FIELDS:
        raise StoreConfigError(
            "Неподдерживаемое поле-ключ", {"key_field": raw, "allowed": list(KEY_FIELDS)}
        )
    return value


class TaskQueue(ABC):
    backend: str = "abstract"

    def __init__(self, *, key_field: str = "id") -> None:
        self.key_field = normalize_key_field(key_field)

    # ---- helpers ----

    def prepare_new(self, task: Task) -> Task:
        """
        Валидация и заполнение служебных полей новой задачи.
        Возвращает копию - исходный объект клиента не меняется.
        """
        filename = (task.filename or "").strip()
        if not filename:
            raise InvalidTaskError("filename обязателен")
        if task.create_time < 0:
            raise InvalidTaskError("create_time не может быть отрицательным")
        try:
            parents = normalize_parents(task.parents)
        except TypeError as e:
            raise InvalidTaskError("parents должен быть списком строк") from e

        if self.key_field == "filename":
            task_id = filename
        else:
            task_id = (task.id or "").strip() or new_task_id()

        return dataclasses.replace(
            task,
            id=task_id,
            filename=filename,
            description=task.description or "",
            parents=parents,
            mime_type=(task.mime_type or "").strip(),
            create_time=task.create_time or next_create_time_ns(),
            attempts=0,
            last_error=None,
            not_before=None,
            revision=new_revision(),
            dead_reason=None,
            dead_at=None,
        )

    # ---- pending ----

    @abstractmethod
    def create(self, task: Task) -> Task:
        """Сохранить новую задачу; возвращает сохранённую копию (с id и ревизией)."""

    @abstractmethod
    def get(self, task_id: str) -> Task:
        """Задача из pending-набора или NotFoundError."""

    @abstractmethod
    def query_ordered_by_creation(self) -> Iterator[Task]:
        """
        Ленивая конечная последовательность pending-задач по возрастанию create_time
        (при равенстве - в порядке вставки).
        """

    def list(self) -> list[Task]:
        """Все pending-задачи (порядок клиенту не гарантируется)."""
        return list(self.query_ordered_by_creation())

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def delete(self, task: Task) -> None:
        """Удалить по id + ревизии."""

    @abstractmethod
    def record_failure(self, task: Task, *, error: str, not_before: float | None) -> Task:
        """attempts += 1, запомнить ошибку и время следующей попытки."""

    # ---- DLQ ----

    @abstractmethod
    def dead_letter(self, task: Task, *, reason: str) -> Task:
        """Перенести задачу из pending в DLQ (с проверкой ревизии)."""

    @abstractmethod
    def list_dead_letters(self) -> list[Task]: ...

    @abstractmethod
    def requeue_dead_letter(self, task_id: str) -> Task:
        """Вернуть задачу из DLQ в pending (attempts сбрасываются, create_time сохраняется)."""

    @abstractmethod
    def discard_dead_letter(self, task_id: str) -> None: ...

    # ---- lifecycle ----

    def ping(self) -> None:
        """Проверка доступности носителя (readiness)."""
        self.count()

    def close(self) -> None:
        return None
