"""
FastAPI Depends.

Сюда выносим:
- проверку авторизации (X-API-Key)
- доступ к Runtime процесса (очередь, диспетчер)
- перевод AppError в HTTPException
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from upload_dispatcher.common.errors import AppError, ErrCode, UnauthorizedError
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.common.security import AuthContext, require_auth
from upload_dispatcher.queue.base import TaskQueue
from upload_dispatcher.services.dispatcher import Dispatcher
from upload_dispatcher.services.runtime import Runtime

log = get_project_logger()

_STATUS_BY_CODE = {
    ErrCode.INVALID_TASK: status.HTTP_400_BAD_REQUEST,
    ErrCode.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrCode.ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    ErrCode.CONFLICTING_REVISION: status.HTTP_409_CONFLICT,
    ErrCode.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _request_meta(request: Request | None) -> tuple[str, str, str | None]:
    if request is None:
        return "unknown", "UNKNOWN", None
    endpoint = request.url.path
    method = request.method
    client_ip = request.client.host if request.client else None
    return endpoint, method, client_ip


def _audit_deny(*, request: Request | None, reason: str, error_code: str) -> None:
    endpoint, method, client_ip = _request_meta(request)
    log.warning(
        "security_audit_deny",
        extra={
            "payload": {
                "endpoint": endpoint,
                "method": method,
                "status_code": status.HTTP_401_UNAUTHORIZED,
                "reason": reason,
                "error_code": error_code,
                "client_ip": client_ip,
            }
        },
    )


def auth_dep(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> AuthContext:
    """
    Проверка авторизации для HTTP.
    """
    try:
        return require_auth(x_api_key=x_api_key)
    except UnauthorizedError as e:
        _audit_deny(request=request, reason=e.message, error_code=e.code)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": e.code, "message": e.message},
        ) from e


def http_error(e: AppError) -> HTTPException:
    code = _STATUS_BY_CODE.get(e.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    detail: dict = {"code": e.code, "message": e.message}
    if e.details:
        detail["details"] = e.details
    return HTTPException(status_code=code, detail=detail)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": ErrCode.STORE_UNAVAILABLE, "message": "Runtime не инициализирован"},
        )
    return runtime


def get_queue(request: Request) -> TaskQueue:
    return get_runtime(request).queue


def get_dispatcher(request: Request) -> Dispatcher:
    return get_runtime(request).dispatcher
