"""
Загрузчик в Google Drive (v3, resumable upload) поверх requests.

Протокол:
- POST {base}/upload/drive/v3/files?uploadType=resumable - метаданные, в ответ Location
- PUT <Location> кусками (кратно 256 KiB, кроме последнего) с Content-Range
- 308 - продолжать (Range: bytes=0-N - сколько принято сервером;
  без Range сервер не принял ничего, кусок отправляется заново)
- 200/201 - загрузка завершена, в теле id файла

Токен доступа берётся уже готовым (GDRIVE_ACCESS_TOKEN), обновление токена не наша задача.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any, BinaryIO

import requests

from upload_dispatcher.common.cancel import CancelToken
from upload_dispatcher.common.config import Settings, get_settings
from upload_dispatcher.common.errors import UploadFailedError
from upload_dispatcher.common.logging import get_project_logger

from .base import UploadCompleted, UploadEvent, UploadMetadata, UploadProgress

log = get_project_logger()

CHUNK_ALIGN = 256 * 1024
# подряд идущие 308 без продвижения, после которых попытка считается неудачной
MAX_STALLED_PUTS = 3


def align_chunk_size(size: int) -> int:
    return max(CHUNK_ALIGN, (int(size) // CHUNK_ALIGN) * CHUNK_ALIGN)


def _committed_bytes(resp: requests.Response, fallback: int) -> int:
    rng = resp.headers.get("Range")
    if not rng:
        return fallback
    try:
        return int(rng.rsplit("-", 1)[1]) + 1
    except (IndexError, ValueError):
        return fallback


def drive_file_url(file_id: str) -> str:
    return f"https://drive.google.com/file/d/{file_id}/view"


class GoogleDriveUploader:
    name = "gdrive"

    def __init__(
        self,
        *,
        access_token: str | None = None,
        api_base: str | None = None,
        chunk_size: int | None = None,
        timeout_sec: int | None = None,
        session: requests.Session | None = None,
        settings: Settings | None = None,
    ) -> None:
        s = settings or get_settings()
        self.access_token = (access_token if access_token is not None else s.gdrive_access_token) or ""
        self.api_base = (api_base or s.gdrive_api_base or "").rstrip("/")
        self.chunk_size = align_chunk_size(chunk_size or s.gdrive_chunk_size_bytes)
        self.timeout_sec = int(timeout_sec if timeout_sec is not None else s.gdrive_timeout_sec)
        self._session = session or requests.Session()

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        token = self.access_token.strip()
        if not token:
            raise UploadFailedError("GDRIVE_ACCESS_TOKEN не настроен")
        headers = {"Authorization": f"Bearer {token}"}
        if extra:
            headers.update(extra)
        return headers

    def _initiate(self, metadata: UploadMetadata) -> str:
        body: dict[str, Any] = {"name": metadata.name}
        if metadata.description:
            body["description"] = metadata.description
        if metadata.parents:
            body["parents"] = list(metadata.parents)
        if metadata.mime_type:
            body["mimeType"] = metadata.mime_type

        extra = {
            "Content-Type": "application/json; charset=UTF-8",
            "X-Upload-Content-Length": str(metadata.size),
        }
        if metadata.mime_type:
            extra["X-Upload-Content-Type"] = metadata.mime_type

        url = f"{self.api_base}/upload/drive/v3/files"
        try:
            resp = self._session.post(
                url,
                params={"uploadType": "resumable", "fields": "id"},
                json=body,
                headers=self._headers(extra),
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise UploadFailedError(
                "Ошибка обращения к Google Drive API", {"stage": "initiate", "err": str(e)[:200]}
            ) from e

        if resp.status_code != 200:
            raise UploadFailedError(
                "Google Drive отклонил создание сессии загрузки",
                {"stage": "initiate", "status": resp.status_code, "body": resp.text[:200]},
            )
        location = resp.headers.get("Location")
        if not location:
            raise UploadFailedError("Google Drive не вернул Location", {"stage": "initiate"})
        return location

    def _put(self, session_url: str, data: bytes, content_range: str) -> requests.Response:
        try:
            return self._session.put(
                session_url,
                data=data,
                headers=self._headers({"Content-Range": content_range}),
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise UploadFailedError(
                "Ошибка обращения к Google Drive API", {"stage": "chunk", "err": str(e)[:200]}
            ) from e

    def upload(
        self,
        *,
        stream: BinaryIO,
        metadata: UploadMetadata,
        cancel: CancelToken,
    ) -> Iterator[UploadEvent]:
        cancel.raise_if_cancelled()
        session_url = self._initiate(metadata)

        sent = 0
        buf = b""
        eof = False
        stalled = 0
        while True:
            cancel.raise_if_cancelled()
            while len(buf) < self.chunk_size and not eof:
                data = stream.read(self.chunk_size - len(buf))
                if not data:
                    eof = True
                else:
                    buf += data

            piece = buf[: self.chunk_size]
            last = eof and len(piece) == len(buf)
            if piece:
                total = str(sent + len(piece)) if last else "*"
                content_range = f"bytes {sent}-{sent + len(piece) - 1}/{total}"
            else:
                content_range = f"bytes */{sent}"

            resp = self._put(session_url, piece, content_range)

            if resp.status_code in (200, 201):
                sent += len(piece)
                try:
                    file_id = str(resp.json().get("id") or "")
                except ValueError:
                    file_id = ""
                if not file_id:
                    raise UploadFailedError("Google Drive не вернул id файла", {"stage": "finalize"})
                yield UploadProgress(bytes_sent=sent, total_bytes=max(metadata.size, sent))
                log.info(
                    "gdrive_upload_completed",
                    extra={"payload": {"file_id": file_id, "name": metadata.name, "bytes": sent}},
                )
                yield UploadCompleted(file_id=file_id, url=drive_file_url(file_id))
                return

            if resp.status_code != 308:
                raise UploadFailedError(
                    "Google Drive отклонил кусок файла",
                    {"stage": "chunk", "status": resp.status_code, "body": resp.text[:200]},
                )

            committed = _committed_bytes(resp, sent)
            advance = committed - sent
            if advance == 0 and piece:
                # 308 без Range: сервер ничего не принял, повторяем тот же кусок
                stalled += 1
                if stalled > MAX_STALLED_PUTS:
                    raise UploadFailedError(
                        "Google Drive не принимает данные",
                        {"stage": "chunk", "sent": sent, "puts": stalled},
                    )
                log.warning(
                    "gdrive_chunk_not_committed",
                    extra={"payload": {"name": metadata.name, "sent": sent, "retry": stalled}},
                )
                continue
            if advance <= 0 or advance > len(piece):
                raise UploadFailedError(
                    "Google Drive не принял данные",
                    {"stage": "chunk", "sent": sent, "committed": committed},
                )
            buf = buf[advance:]
            sent = committed
            stalled = 0
            yield UploadProgress(bytes_sent=sent, total_bytes=max(metadata.size, sent))
