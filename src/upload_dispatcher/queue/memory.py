"""
In-process очередь задач.

Назначение:
- работа без внешних зависимостей (тесты, single-node)
- опционально - сохранение в локальный JSON-файл (переживает рестарт)

Формат файла:
    {"version": 1, "seq": <int>, "tasks": [...], "dead_letters": [...]}

Запись файла атомарная (tmp + os.replace). Если запись не удалась -
изменение в памяти откатывается и наружу уходит StoreUnavailableError.
"""

from __future__ import annotations

import copy
import json
import os
import threading
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from upload_dispatcher.common.errors import (
    ConflictingRevisionError,
    NotFoundError,
    StoreConfigError,
    StoreUnavailableError,
    TaskAlreadyExistsError,
)
from upload_dispatcher.common.ids import new_revision
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.domain.task import Task

from .base import TaskQueue

log = get_project_logger()

_FILE_VERSION = 1


class MemoryTaskQueue(TaskQueue):
    backend = "mem"

    def __init__(self, *, key_field: str = "id", localfile: str | Path | None = None) -> None:
        super().__init__(key_field=key_field)
        self._lock = threading.RLock()
        self._path = Path(localfile) if localfile else None
        # id -> (seq, record)
        self._tasks: dict[str, tuple[int, dict[str, Any]]] = {}
        self._dead: dict[str, tuple[int, dict[str, Any]]] = {}
        self._seq = 0
        if self._path is not None:
            self._load()
        log.info(
            "task_queue_opened",
            extra={
                "payload": {
                    "backend": self.backend,
                    "key_field": self.key_field,
                    "localfile": str(self._path) if self._path else None,
                    "pending": len(self._tasks),
                    "dead_letters": len(self._dead),
                }
            },
        )

    # ---- persistence ----

    def _load(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as e:
            raise StoreConfigError(
                "Файл очереди повреждён", {"path": str(self._path), "err": str(e)}
            ) from e
        except OSError as e:
            raise StoreUnavailableError(
                "Не удалось прочитать файл очереди", {"path": str(self._path), "err": str(e)}
            ) from e

        seq = 0
        for rec in raw.get("tasks") or []:
            seq += 1
            self._tasks[str(rec["id"])] = (int(rec.get("_seq") or seq), _strip_seq(rec))
        for rec in raw.get("dead_letters") or []:
            seq += 1
            self._dead[str(rec["id"])] = (int(rec.get("_seq") or seq), _strip_seq(rec))
        self._seq = max(int(raw.get("seq") or 0), seq)

    def _save(self) -> None:
        if self._path is None:
            return
        doc = {
            "version": _FILE_VERSION,
            "seq": self._seq,
            "tasks": [{**rec, "_seq": seq} for seq, rec in self._tasks.values()],
            "dead_letters": [{**rec, "_seq": seq} for seq, rec in self._dead.values()],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(doc, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self._path)

    def _commit(self, snapshot: tuple[dict, dict, int]) -> None:
        try:
            self._save()
        except OSError as e:
            self._tasks, self._dead, self._seq = snapshot
            raise StoreUnavailableError(
                "Не удалось записать файл очереди", {"path": str(self._path), "err": str(e)}
            ) from e

    def _snapshot(self) -> tuple[dict, dict, int]:
        return dict(self._tasks), dict(self._dead), self._seq

    # ---- pending ----

    def create(self, task: Task) -> Task:
        stored = self.prepare_new(task)
        with self._lock:
            if stored.id in self._tasks or stored.id in self._dead:
                raise TaskAlreadyExistsError(details={"task_id": stored.id})
            snapshot = self._snapshot()
            self._seq += 1
            self._tasks[stored.id] = (self._seq, stored.to_record())
            self._commit(snapshot)
        return copy.deepcopy(stored)

    def get(self, task_id: str) -> Task:
        with self._lock:
            item = self._tasks.get(task_id)
            if item is None:
                raise NotFoundError("Задача не найдена", {"task_id": task_id})
            return Task.from_record(copy.deepcopy(item[1]))

    def query_ordered_by_creation(self) -> Iterator[Task]:
        with self._lock:
            order = sorted(
                self._tasks.items(), key=lambda kv: (kv[1][1]["create_time"], kv[1][0])
            )
            snapshot = [(task_id, seq) for task_id, (seq, _) in order]
        for task_id, seq in snapshot:
            # перечитываем под блокировкой: удалённые после снимка пропускаем
            with self._lock:
                item = self._tasks.get(task_id)
                if item is None or item[0] != seq:
                    continue
                rec = copy.deepcopy(item[1])
            yield Task.from_record(rec)

    def count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def _check_revision(self, task: Task) -> tuple[int, dict[str, Any]]:
        item = self._tasks.get(task.id)
        if item is None:
            raise NotFoundError("Задача не найдена", {"task_id": task.id})
        if item[1].get("revision") != task.revision:
            raise ConflictingRevisionError(
                details={"task_id": task.id, "expected": task.revision}
            )
        return item

    def delete(self, task: Task) -> None:
        with self._lock:
            self._check_revision(task)
            snapshot = self._snapshot()
            del self._tasks[task.id]
            self._commit(snapshot)

    def record_failure(self, task: Task, *, error: str, not_before: float | None) -> Task:
        with self._lock:
            seq, rec = self._check_revision(task)
            snapshot = self._snapshot()
            updated = {
                **rec,
                "attempts": int(rec.get("attempts") or 0) + 1,
                "last_error": error,
                "not_before": not_before,
                "revision": new_revision(),
            }
            self._tasks[task.id] = (seq, updated)
            self._commit(snapshot)
            return Task.from_record(copy.deepcopy(updated))

    # ---- DLQ ----

    def dead_letter(self, task: Task, *, reason: str) -> Task:
        with self._lock:
            seq, rec = self._check_revision(task)
            snapshot = self._snapshot()
            dead = {
                **rec,
                "attempts": int(rec.get("attempts") or 0) + 1,
                "last_error": reason,
                "not_before": None,
                "dead_reason": reason,
                "dead_at": time.time(),
                "revision": new_revision(),
            }
            del self._tasks[task.id]
            self._dead[task.id] = (seq, dead)
            self._commit(snapshot)
            return Task.from_record(copy.deepcopy(dead))

    def list_dead_letters(self) -> list[Task]:
        with self._lock:
            items = sorted(self._dead.values(), key=lambda it: (it[1]["create_time"], it[0]))
            return [Task.from_record(copy.deepcopy(rec)) for _, rec in items]

    def requeue_dead_letter(self, task_id: str) -> Task:
        with self._lock:
            item = self._dead.get(task_id)
            if item is None:
                raise NotFoundError("Задача не найдена в DLQ", {"task_id": task_id})
            if task_id in self._tasks:
                raise TaskAlreadyExistsError(details={"task_id": task_id})
            seq, rec = item
            snapshot = self._snapshot()
            revived = {
                **rec,
                "attempts": 0,
                "last_error": None,
                "not_before": None,
                "dead_reason": None,
                "dead_at": None,
                "revision": new_revision(),
            }
            del self._dead[task_id]
            self._tasks[task_id] = (seq, revived)
            self._commit(snapshot)
            return Task.from_record(copy.deepcopy(revived))

    def discard_dead_letter(self, task_id: str) -> None:
        with self._lock:
            if task_id not in self._dead:
                raise NotFoundError("Задача не найдена в DLQ", {"task_id": task_id})
            snapshot = self._snapshot()
            del self._dead[task_id]
            self._commit(snapshot)


def _strip_seq(rec: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in rec.items() if k != "_seq"}
