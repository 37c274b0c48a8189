"""
HTTP роуты управления диспетчером.

- GET  /status
- POST /pause
- POST /resume

pause/resume идемпотентны и возвращают итоговый статус.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from apps.api_gateway.deps import auth_dep, get_dispatcher
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.common.security import AuthContext
from upload_dispatcher.contracts.http_api import StatusResponse
from upload_dispatcher.services.dispatcher import Dispatcher

log = get_project_logger()

router = APIRouter()


@router.get("/status", response_model=StatusResponse, response_model_exclude_none=True)
def get_status(
    _: AuthContext = Depends(auth_dep),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> StatusResponse:
    return StatusResponse.from_status(dispatcher.status())


@router.post("/pause", response_model=StatusResponse, response_model_exclude_none=True)
def pause(
    ctx: AuthContext = Depends(auth_dep),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> StatusResponse:
    st = dispatcher.pause()
    log.info("pause_requested", extra={"payload": {"subject": ctx.subject}})
    return StatusResponse.from_status(st)


@router.post("/resume", response_model=StatusResponse, response_model_exclude_none=True)
def resume(
    ctx: AuthContext = Depends(auth_dep),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> StatusResponse:
    st = dispatcher.resume()
    log.info("resume_requested", extra={"payload": {"subject": ctx.subject}})
    return StatusResponse.from_status(st)
