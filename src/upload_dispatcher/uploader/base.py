"""
Базовый контракт загрузчика (граница с внешним хранилищем).

Назначение:
- отделить "куда и как загружаем" от цикла диспетчера
- единые события прогресса для /status и логов

Контракт:
- upload() возвращает конечный, одноразовый итератор событий
- поток данных уже ограничен по скорости (RateLimitedReader)
- отмена - через CancelToken (OperationCancelled), ошибка - UploadFailedError
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import BinaryIO, Protocol

from upload_dispatcher.common.cancel import CancelToken


@dataclass(frozen=True)
class UploadMetadata:
    name: str
    description: str = ""
    parents: list[str] = field(default_factory=list)
    mime_type: str = ""
    size: int = 0


@dataclass(frozen=True)
class UploadProgress:
    bytes_sent: int
    total_bytes: int


@dataclass(frozen=True)
class UploadCompleted:
    file_id: str
    url: str | None = None


UploadEvent = UploadProgress | UploadCompleted


class Uploader(Protocol):
    """
    Контракт загрузчика.
    """

    name: str

    def upload(
        self,
        *,
        stream: BinaryIO,
        metadata: UploadMetadata,
        cancel: CancelToken,
    ) -> Iterator[UploadEvent]:
        """Загрузить поток; последним событием идёт UploadCompleted."""
        ...
