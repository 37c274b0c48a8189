"""
Mock-загрузчик для dev/тестов.

Назначение:
- гонять диспетчер без реального Google Drive
- вычитывает поток целиком (через ограничитель скорости) и запоминает результат
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

from upload_dispatcher.common.cancel import CancelToken

from .base import UploadCompleted, UploadEvent, UploadMetadata, UploadProgress


@dataclass(frozen=True)
class MockUpload:
    file_id: str
    metadata: UploadMetadata
    size: int


class MockUploader:
    name = "mock"

    def __init__(self, *, block_size: int = 64 * 1024, block_delay_sec: float = 0.0) -> None:
        self.block_size = max(1, int(block_size))
        self.block_delay_sec = max(0.0, float(block_delay_sec))
        self._lock = threading.Lock()
        self.uploads: list[MockUpload] = []

    def upload(
        self,
        *,
        stream: BinaryIO,
        metadata: UploadMetadata,
        cancel: CancelToken,
    ) -> Iterator[UploadEvent]:
        sent = 0
        while True:
            cancel.raise_if_cancelled()
            data = stream.read(self.block_size)
            if not data:
                break
            sent += len(data)
            if self.block_delay_sec:
                cancel.sleep(self.block_delay_sec)
            yield UploadProgress(bytes_sent=sent, total_bytes=max(metadata.size, sent))

        with self._lock:
            file_id = f"mock-{len(self.uploads) + 1}"
            self.uploads.append(MockUpload(file_id=file_id, metadata=metadata, size=sent))
        yield UploadCompleted(file_id=file_id, url=f"mock://files/{file_id}")
