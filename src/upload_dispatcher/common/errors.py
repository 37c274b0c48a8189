"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP/очереди/DLQ
- единый стиль исключений по проекту

Таксономия:
- invalid_task          - плохой ввод, отклоняется при создании, не ретраится
- store_unavailable     - хранилище недоступно (транзиентно)
- conflicting_revision  - задача изменена/удалена с момента чтения
- not_found             - задачи уже нет (при delete трактуется как успех)
- upload_failed         - ошибка загрузчика, задача остаётся в очереди
- cancelled             - пауза или остановка процесса, не ошибка
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    # Общие
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"

    # Очередь задач
    INVALID_TASK = "invalid_task"
    ALREADY_EXISTS = "already_exists"
    CONFLICTING_REVISION = "conflicting_revision"
    STORE_UNAVAILABLE = "store_unavailable"
    STORE_CONFIG = "store_config"

    # Выполнение
    UPLOAD_FAILED = "upload_failed"
    CANCELLED = "cancelled"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Не авторизован", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNAUTHORIZED, message, details)


class InvalidTaskError(AppError):
    def __init__(self, message: str = "Некорректная задача", details: dict | None = None) -> None:
        super().__init__(ErrCode.INVALID_TASK, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class ConflictingRevisionError(AppError):
    def __init__(
        self, message: str = "Задача изменена с момента чтения", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.CONFLICTING_REVISION, message, details)


class TaskAlreadyExistsError(AppError):
    def __init__(self, message: str = "Задача уже существует", details: dict | None = None) -> None:
        super().__init__(ErrCode.ALREADY_EXISTS, message, details)


class StoreUnavailableError(AppError):
    def __init__(
        self, message: str = "Хранилище задач недоступно", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.STORE_UNAVAILABLE, message, details)


class StoreConfigError(AppError):
    def __init__(
        self, message: str = "Некорректная конфигурация хранилища", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.STORE_CONFIG, message, details)


class UploadFailedError(AppError):
    def __init__(self, message: str = "Ошибка загрузки", details: dict | None = None) -> None:
        super().__init__(ErrCode.UPLOAD_FAILED, message, details)


class OperationCancelled(AppError):
    """
    Операция отменена токеном отмены.
    reason: "pause" | "shutdown" | произвольная строка.
    """

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(ErrCode.CANCELLED, "Операция отменена", {"reason": reason})
        self.reason = reason
