"""
Очередь задач в Redis.

Раскладка ключей (prefix = upload-dispatcher:<collection>):
- <prefix>:task:<id>      - JSON записи pending-задачи
- <prefix>:order          - ZSET (score=0), member "<create_time:020d>:<seq:012d>:<id>"
                            -> лексикографический порядок = FIFO по create_time,
                               при равенстве - порядок вставки
- <prefix>:seq            - счётчик вставок
- <prefix>:dlq:<id>       - JSON записи в DLQ
- <prefix>:dlq_order      - ZSET для DLQ

Конкурентность:
- оптимистичные транзакции WATCH/MULTI по ключу конкретной задачи
- WatchError на delete/update -> ConflictingRevisionError
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import redis

from upload_dispatcher.common.errors import (
    ConflictingRevisionError,
    NotFoundError,
    StoreUnavailableError,
    TaskAlreadyExistsError,
)
from upload_dispatcher.common.ids import new_revision
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.domain.task import Task

from .base import TaskQueue

log = get_project_logger()

KEY_NAMESPACE = "upload-dispatcher"
_OWN_QUERY_PARAMS = {"collection", "key_field"}


@contextmanager
def _store_errors(op: str):
    try:
        yield
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
        raise StoreUnavailableError(
            "Redis недоступен", {"op": op, "err": str(e)[:200]}
        ) from e


def split_redis_url(url: str) -> tuple[str, dict[str, str]]:
    """
    Отделить собственные параметры (collection, key_field) от URL подключения.
    """
    parts = urlsplit(url)
    own: dict[str, str] = {}
    rest: list[tuple[str, str]] = []
    for k, v in parse_qsl(parts.query, keep_blank_values=True):
        if k in _OWN_QUERY_PARAMS:
            own[k] = v
        else:
            rest.append((k, v))
    clean = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(rest), parts.fragment))
    return clean, own


def _order_member(rec: dict[str, Any]) -> str:
    return f"{int(rec['create_time']):020d}:{int(rec['seq']):012d}:{rec['id']}"


def _id_from_member(member: str) -> str:
    return member.split(":", 2)[2]


class RedisTaskQueue(TaskQueue):
    backend = "redis"

    def __init__(
        self,
        client: redis.Redis,
        *,
        collection: str = "tasks",
        key_field: str = "id",
    ) -> None:
        super().__init__(key_field=key_field)
        self._r = client
        self.collection = collection or "tasks"
        self._prefix = f"{KEY_NAMESPACE}:{self.collection}"

    @classmethod
    def from_url(cls, url: str) -> RedisTaskQueue:
        clean, own = split_redis_url(url)
        client = redis.Redis.from_url(clean, decode_responses=True)
        queue = cls(
            client,
            collection=own.get("collection") or "tasks",
            key_field=own.get("key_field") or "id",
        )
        log.info(
            "task_queue_opened",
            extra={
                "payload": {
                    "backend": cls.backend,
                    "collection": queue.collection,
                    "key_field": queue.key_field,
                }
            },
        )
        return queue

    # ---- keys ----

    def _task_key(self, task_id: str) -> str:
        return f"{self._prefix}:task:{task_id}"

    def _dlq_key(self, task_id: str) -> str:
        return f"{self._prefix}:dlq:{task_id}"

    @property
    def _order_key(self) -> str:
        return f"{self._prefix}:order"

    @property
    def _dlq_order_key(self) -> str:
        return f"{self._prefix}:dlq_order"

    @property
    def _seq_key(self) -> str:
        return f"{self._prefix}:seq"

    # ---- pending ----

    def create(self, task: Task) -> Task:
        stored = self.prepare_new(task)
        task_key = self._task_key(stored.id)
        dlq_key = self._dlq_key(stored.id)
        with _store_errors("create"):
            rec = {**stored.to_record(), "seq": int(self._r.incr(self._seq_key))}
            with self._r.pipeline() as pipe:
                try:
                    pipe.watch(task_key, dlq_key)
                    if pipe.exists(task_key, dlq_key):
                        raise TaskAlreadyExistsError(details={"task_id": stored.id})
                    pipe.multi()
                    pipe.set(task_key, json.dumps(rec, ensure_ascii=False))
                    pipe.zadd(self._order_key, {_order_member(rec): 0})
                    pipe.execute()
                except redis.exceptions.WatchError as e:
                    raise TaskAlreadyExistsError(details={"task_id": stored.id}) from e
        return stored

    def _load(self, key: str) -> dict[str, Any] | None:
        raw = self._r.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def get(self, task_id: str) -> Task:
        with _store_errors("get"):
            rec = self._load(self._task_key(task_id))
        if rec is None:
            raise NotFoundError("Задача не найдена", {"task_id": task_id})
        return Task.from_record(rec)

    def query_ordered_by_creation(self) -> Iterator[Task]:
        with _store_errors("query"):
            members = self._r.zrange(self._order_key, 0, -1)
        for member in members:
            with _store_errors("query"):
                rec = self._load(self._task_key(_id_from_member(member)))
            # удалена между снимком порядка и чтением - пропускаем
            if rec is None:
                continue
            yield Task.from_record(rec)

    def count(self) -> int:
        with _store_errors("count"):
            return int(self._r.zcard(self._order_key))

    def ping(self) -> None:
        with _store_errors("ping"):
            self._r.ping()

    def _mutate(self, op: str, task: Task, apply) -> Any:
        """
        Общий каркас изменения задачи под WATCH:
        apply(pipe, rec) ставит команды в MULTI и возвращает результат операции.
        """
        task_key = self._task_key(task.id)
        with _store_errors(op):
            with self._r.pipeline() as pipe:
                try:
                    pipe.watch(task_key)
                    raw = pipe.get(task_key)
                    if raw is None:
                        raise NotFoundError("Задача не найдена", {"task_id": task.id})
                    rec = json.loads(raw)
                    if rec.get("revision") != task.revision:
                        raise ConflictingRevisionError(
                            details={"task_id": task.id, "expected": task.revision}
                        )
                    pipe.multi()
                    result = apply(pipe, rec)
                    pipe.execute()
                    return result
                except redis.exceptions.WatchError as e:
                    raise ConflictingRevisionError(details={"task_id": task.id}) from e

    def delete(self, task: Task) -> None:
        def _apply(pipe, rec):
            pipe.delete(self._task_key(task.id))
            pipe.zrem(self._order_key, _order_member(rec))

        self._mutate("delete", task, _apply)

    def record_failure(self, task: Task, *, error: str, not_before: float | None) -> Task:
        def _apply(pipe, rec):
            updated = {
                **rec,
                "attempts": int(rec.get("attempts") or 0) + 1,
                "last_error": error,
                "not_before": not_before,
                "revision": new_revision(),
            }
            pipe.set(self._task_key(task.id), json.dumps(updated, ensure_ascii=False))
            return Task.from_record(updated)

        return self._mutate("record_failure", task, _apply)

    # ---- DLQ ----

    def dead_letter(self, task: Task, *, reason: str) -> Task:
        def _apply(pipe, rec):
            dead = {
                **rec,
                "attempts": int(rec.get("attempts") or 0) + 1,
                "last_error": reason,
                "not_before": None,
                "dead_reason": reason,
                "dead_at": time.time(),
                "revision": new_revision(),
            }
            pipe.delete(self._task_key(task.id))
            pipe.zrem(self._order_key, _order_member(rec))
            pipe.set(self._dlq_key(task.id), json.dumps(dead, ensure_ascii=False))
            pipe.zadd(self._dlq_order_key, {_order_member(dead): 0})
            return Task.from_record(dead)

        return self._mutate("dead_letter", task, _apply)

    def list_dead_letters(self) -> list[Task]:
        out: list[Task] = []
        with _store_errors("list_dead_letters"):
            for member in self._r.zrange(self._dlq_order_key, 0, -1):
                rec = self._load(self._dlq_key(_id_from_member(member)))
                if rec is not None:
                    out.append(Task.from_record(rec))
        return out

    def requeue_dead_letter(self, task_id: str) -> Task:
        dlq_key = self._dlq_key(task_id)
        task_key = self._task_key(task_id)
        with _store_errors("requeue_dead_letter"):
            with self._r.pipeline() as pipe:
                try:
                    pipe.watch(dlq_key, task_key)
                    raw = pipe.get(dlq_key)
                    if raw is None:
                        raise NotFoundError("Задача не найдена в DLQ", {"task_id": task_id})
                    if pipe.exists(task_key):
                        raise TaskAlreadyExistsError(details={"task_id": task_id})
                    rec = json.loads(raw)
                    revived = {
                        **rec,
                        "attempts": 0,
                        "last_error": None,
                        "not_before": None,
                        "dead_reason": None,
                        "dead_at": None,
                        "revision": new_revision(),
                    }
                    pipe.multi()
                    pipe.delete(dlq_key)
                    pipe.zrem(self._dlq_order_key, _order_member(rec))
                    pipe.set(task_key, json.dumps(revived, ensure_ascii=False))
                    pipe.zadd(self._order_key, {_order_member(revived): 0})
                    pipe.execute()
                    return Task.from_record(revived)
                except redis.exceptions.WatchError as e:
                    raise ConflictingRevisionError(details={"task_id": task_id}) from e

    def discard_dead_letter(self, task_id: str) -> None:
        dlq_key = self._dlq_key(task_id)
        with _store_errors("discard_dead_letter"):
            with self._r.pipeline() as pipe:
                try:
                    pipe.watch(dlq_key)
                    raw = pipe.get(dlq_key)
                    if raw is None:
                        raise NotFoundError("Задача не найдена в DLQ", {"task_id": task_id})
                    rec = json.loads(raw)
                    pipe.multi()
                    pipe.delete(dlq_key)
                    pipe.zrem(self._dlq_order_key, _order_member(rec))
                    pipe.execute()
                except redis.exceptions.WatchError as e:
                    raise ConflictingRevisionError(details={"task_id": task_id}) from e

    def close(self) -> None:
        self._r.close()
