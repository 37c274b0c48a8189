"""
HTTP роуты очереди задач.

- POST   /tasks
- GET    /tasks
- GET    /tasks/{task_id}
- DELETE /tasks/{task_id}

Авторизация: Depends(auth_dep)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from apps.api_gateway.deps import auth_dep, get_dispatcher, get_queue, http_error
from upload_dispatcher.common.errors import AppError, ConflictingRevisionError
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.common.security import AuthContext
from upload_dispatcher.contracts.http_api import TaskCreateRequest, TaskListResponse, TaskResponse
from upload_dispatcher.domain.task import Task
from upload_dispatcher.queue.base import TaskQueue
from upload_dispatcher.services.dispatcher import Dispatcher

log = get_project_logger()

router = APIRouter()


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(
    req: TaskCreateRequest,
    ctx: AuthContext = Depends(auth_dep),
    queue: TaskQueue = Depends(get_queue),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> TaskResponse:
    try:
        task = queue.create(
            Task(
                filename=req.filename,
                description=req.description,
                parents=list(req.parents),
                mime_type=req.mime_type,
            )
        )
    except AppError as e:
        raise http_error(e) from e

    dispatcher.wake()
    log.info(
        "task_created",
        extra={"payload": {"task_id": task.id, "filename": task.filename, "subject": ctx.subject}},
    )
    return TaskResponse.from_task(task)


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    _: AuthContext = Depends(auth_dep),
    queue: TaskQueue = Depends(get_queue),
) -> TaskListResponse:
    try:
        tasks = queue.list()
    except AppError as e:
        raise http_error(e) from e
    return TaskListResponse(tasks=[TaskResponse.from_task(t) for t in tasks])


@router.get("/tasks/{task_id:path}", response_model=TaskResponse)
def get_task(
    task_id: str,
    _: AuthContext = Depends(auth_dep),
    queue: TaskQueue = Depends(get_queue),
) -> TaskResponse:
    try:
        return TaskResponse.from_task(queue.get(task_id))
    except AppError as e:
        raise http_error(e) from e


@router.delete("/tasks/{task_id:path}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: str,
    ctx: AuthContext = Depends(auth_dep),
    queue: TaskQueue = Depends(get_queue),
) -> Response:
    """
    Явный отказ от задачи. Если она прямо сейчас загружается, загрузка
    доведётся до конца, но повторно задача уже не пойдёт.
    """
    try:
        task = queue.get(task_id)
        queue.delete(task)
    except ConflictingRevisionError:
        # задача изменилась между чтением и удалением, пробуем ещё раз по свежей ревизии
        try:
            queue.delete(queue.get(task_id))
        except AppError as e:
            raise http_error(e) from e
    except AppError as e:
        raise http_error(e) from e

    log.info("task_deleted", extra={"payload": {"task_id": task_id, "subject": ctx.subject}})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
