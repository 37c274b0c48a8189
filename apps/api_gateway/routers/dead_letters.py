"""
HTTP роуты DLQ (задачи, исчерпавшие попытки).

- GET    /dead-letters
- POST   /dead-letters/{task_id}/requeue
- DELETE /dead-letters/{task_id}
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from apps.api_gateway.deps import auth_dep, get_dispatcher, get_queue, http_error
from upload_dispatcher.common.errors import AppError
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.common.security import AuthContext
from upload_dispatcher.contracts.http_api import (
    DeadLetterListResponse,
    DeadLetterResponse,
    TaskResponse,
)
from upload_dispatcher.queue.base import TaskQueue
from upload_dispatcher.services.dispatcher import Dispatcher

log = get_project_logger()

router = APIRouter()


@router.get("/dead-letters", response_model=DeadLetterListResponse)
def list_dead_letters(
    _: AuthContext = Depends(auth_dep),
    queue: TaskQueue = Depends(get_queue),
) -> DeadLetterListResponse:
    try:
        items = queue.list_dead_letters()
    except AppError as e:
        raise http_error(e) from e
    return DeadLetterListResponse(dead_letters=[DeadLetterResponse.from_task(t) for t in items])


@router.post("/dead-letters/{task_id:path}/requeue", response_model=TaskResponse)
def requeue_dead_letter(
    task_id: str,
    ctx: AuthContext = Depends(auth_dep),
    queue: TaskQueue = Depends(get_queue),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> TaskResponse:
    try:
        task = queue.requeue_dead_letter(task_id)
    except AppError as e:
        raise http_error(e) from e
    dispatcher.wake()
    log.info("dead_letter_requeued", extra={"payload": {"task_id": task_id, "subject": ctx.subject}})
    return TaskResponse.from_task(task)


@router.delete("/dead-letters/{task_id:path}", status_code=status.HTTP_204_NO_CONTENT)
def discard_dead_letter(
    task_id: str,
    ctx: AuthContext = Depends(auth_dep),
    queue: TaskQueue = Depends(get_queue),
) -> Response:
    try:
        queue.discard_dead_letter(task_id)
    except AppError as e:
        raise http_error(e) from e
    log.info("dead_letter_discarded", extra={"payload": {"task_id": task_id, "subject": ctx.subject}})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
