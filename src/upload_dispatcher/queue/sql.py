"""
Очередь задач в SQL (SQLAlchemy).

URL: sqlite:///tasks.db, postgresql+psycopg://..., mysql+pymysql://...
Собственный query-параметр key_field=id|filename вырезается до create_engine.

Конкурентность:
- UPDATE/DELETE ... WHERE task_id=? AND revision=?
- rowcount == 0 -> разбираемся, NotFound это или ConflictingRevision
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from upload_dispatcher.common.errors import (
    ConflictingRevisionError,
    NotFoundError,
    StoreUnavailableError,
    TaskAlreadyExistsError,
)
from upload_dispatcher.common.ids import new_revision
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.domain.task import Task
from upload_dispatcher.storage.db import create_store_engine, make_session_factory, session_scope
from upload_dispatcher.storage.models import Base, UploadTaskRecord

from .base import TaskQueue

log = get_project_logger()

R = UploadTaskRecord


def _to_task(row: UploadTaskRecord) -> Task:
    return Task(
        id=row.task_id,
        filename=row.filename,
        description=row.description or "",
        parents=list(row.parents or []),
        mime_type=row.mime_type or "",
        create_time=int(row.create_time),
        revision=row.revision,
        attempts=int(row.attempts or 0),
        last_error=row.last_error,
        not_before=row.not_before,
        dead_reason=row.dead_reason,
        dead_at=row.dead_at,
    )


class SqlTaskQueue(TaskQueue):
    backend = "sql"

    def __init__(self, engine: Engine, *, key_field: str = "id", create_schema: bool = True) -> None:
        super().__init__(key_field=key_field)
        self._engine = engine
        self._factory = make_session_factory(engine)
        if create_schema:
            try:
                Base.metadata.create_all(engine)
            except (OperationalError, InterfaceError) as e:
                raise StoreUnavailableError(
                    "SQL хранилище недоступно", {"op": "create_schema", "err": str(e)[:200]}
                ) from e

    @classmethod
    def from_url(cls, url: str) -> SqlTaskQueue:
        u = make_url(url)
        key_field = u.query.get("key_field") or "id"
        if isinstance(key_field, tuple):
            key_field = key_field[-1]
        u = u.difference_update_query(["key_field"])
        queue = cls(create_store_engine(u), key_field=key_field)
        log.info(
            "task_queue_opened",
            extra={
                "payload": {
                    "backend": cls.backend,
                    "dialect": u.get_backend_name(),
                    "key_field": queue.key_field,
                }
            },
        )
        return queue

    @contextmanager
    def _session(self, op: str) -> Iterator[Session]:
        try:
            with session_scope(self._factory) as s:
                yield s
        except IntegrityError:
            raise
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(
                "SQL хранилище недоступно", {"op": op, "err": str(e)[:200]}
            ) from e

    @staticmethod
    def _diagnose(s: Session, task: Task) -> None:
        row = s.scalar(select(R).where(R.task_id == task.id, R.dead.is_(False)))
        if row is None:
            raise NotFoundError("Задача не найдена", {"task_id": task.id})
        raise ConflictingRevisionError(details={"task_id": task.id, "expected": task.revision})

    # ---- pending ----

    def create(self, task: Task) -> Task:
        stored = self.prepare_new(task)
        try:
            with self._session("create") as s:
                s.add(
                    R(
                        task_id=stored.id,
                        filename=stored.filename,
                        description=stored.description,
                        parents=list(stored.parents),
                        mime_type=stored.mime_type,
                        create_time=stored.create_time,
                        revision=stored.revision,
                        attempts=0,
                        dead=False,
                    )
                )
                s.flush()
        except IntegrityError as e:
            raise TaskAlreadyExistsError(details={"task_id": stored.id}) from e
        return stored

    def get(self, task_id: str) -> Task:
        with self._session("get") as s:
            row = s.scalar(select(R).where(R.task_id == task_id, R.dead.is_(False)))
            if row is None:
                raise NotFoundError("Задача не найдена", {"task_id": task_id})
            return _to_task(row)

    def query_ordered_by_creation(self) -> Iterator[Task]:
        with self._session("query") as s:
            keys = s.scalars(
                select(R.seq).where(R.dead.is_(False)).order_by(R.create_time.asc(), R.seq.asc())
            ).all()
        for seq in keys:
            # строка удалена или ушла в DLQ после снимка - пропускаем
            with self._session("query") as s:
                row = s.scalar(select(R).where(R.seq == seq, R.dead.is_(False)))
                task = _to_task(row) if row is not None else None
            if task is not None:
                yield task

    def count(self) -> int:
        with self._session("count") as s:
            return int(s.scalar(select(func.count()).select_from(R).where(R.dead.is_(False))) or 0)

    def ping(self) -> None:
        with self._session("ping") as s:
            s.execute(text("SELECT 1"))

    def delete(self, task: Task) -> None:
        with self._session("delete") as s:
            res = s.execute(
                delete(R)
                .where(R.task_id == task.id, R.revision == task.revision, R.dead.is_(False))
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                return
            self._diagnose(s, task)

    def record_failure(self, task: Task, *, error: str, not_before: float | None) -> Task:
        with self._session("record_failure") as s:
            res = s.execute(
                update(R)
                .where(R.task_id == task.id, R.revision == task.revision, R.dead.is_(False))
                .values(
                    attempts=R.attempts + 1,
                    last_error=error,
                    not_before=not_before,
                    revision=new_revision(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                self._diagnose(s, task)
            row = s.scalar(select(R).where(R.task_id == task.id))
            return _to_task(row)

    # ---- DLQ ----

    def dead_letter(self, task: Task, *, reason: str) -> Task:
        with self._session("dead_letter") as s:
            res = s.execute(
                update(R)
                .where(R.task_id == task.id, R.revision == task.revision, R.dead.is_(False))
                .values(
                    dead=True,
                    dead_reason=reason,
                    dead_at=time.time(),
                    attempts=R.attempts + 1,
                    last_error=reason,
                    not_before=None,
                    revision=new_revision(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                self._diagnose(s, task)
            row = s.scalar(select(R).where(R.task_id == task.id))
            return _to_task(row)

    def list_dead_letters(self) -> list[Task]:
        with self._session("list_dead_letters") as s:
            rows = s.scalars(
                select(R).where(R.dead.is_(True)).order_by(R.create_time.asc(), R.seq.asc())
            ).all()
            return [_to_task(r) for r in rows]

    def requeue_dead_letter(self, task_id: str) -> Task:
        with self._session("requeue_dead_letter") as s:
            res = s.execute(
                update(R)
                .where(R.task_id == task_id, R.dead.is_(True))
                .values(
                    dead=False,
                    dead_reason=None,
                    dead_at=None,
                    attempts=0,
                    last_error=None,
                    not_before=None,
                    revision=new_revision(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise NotFoundError("Задача не найдена в DLQ", {"task_id": task_id})
            row = s.scalar(select(R).where(R.task_id == task_id))
            return _to_task(row)

    def discard_dead_letter(self, task_id: str) -> None:
        with self._session("discard_dead_letter") as s:
            res = s.execute(
                delete(R)
                .where(R.task_id == task_id, R.dead.is_(True))
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise NotFoundError("Задача не найдена в DLQ", {"task_id": task_id})

    def close(self) -> None:
        self._engine.dispose()
