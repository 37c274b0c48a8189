"""
Логирование сервиса загрузок.

Назначение:
- один обработчик на stdout, формат по LOG_FORMAT (json | text)
- в каждой записи имя сервиса и поток: HTTP-обработчики и рабочий поток
  диспетчера пишут в один поток вывода, их надо различать
- структурные поля события - через extra={"payload": {...}}
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from upload_dispatcher.common.config import get_settings

ROOT_LOGGER_NAME = "upload-dispatcher"

# urllib3 под requests пишет каждое соединение к Drive на INFO
_NOISY_LOGGERS = ("urllib3", "urllib3.connectionpool")


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC)
        doc: dict[str, Any] = {
            "ts": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict) and payload:
            doc["payload"] = payload
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Формат для локальной отладки: payload дописывается в конец строки."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict) and payload:
            pairs = " ".join(f"{k}={v}" for k, v in payload.items())
            line = f"{line} | {pairs}"
        return line


def build_formatter(log_format: str, service: str) -> logging.Formatter:
    if (log_format or "").strip().lower() == "text":
        return TextFormatter()
    return JsonFormatter(service)


def setup_logging(*, level: str | None = None, log_format: str | None = None) -> logging.Handler:
    """
    Настроить корневой логгер. Повторный вызов заменяет наш обработчик
    (например, после смены LOG_FORMAT в скрипте), чужие обработчики не трогает.
    """
    s = get_settings()
    lvl = logging.getLevelName((level or s.log_level or "INFO").upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO

    root = logging.getLogger()
    root.setLevel(lvl)
    for h in list(root.handlers):
        if getattr(h, "_upload_dispatcher", False):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler._upload_dispatcher = True  # type: ignore[attr-defined]
    handler.setLevel(lvl)
    handler.setFormatter(build_formatter(log_format or s.log_format, s.service_name))
    root.addHandler(handler)

    for name in ("uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(lvl)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(lvl, logging.WARNING))
    return handler


def get_project_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    return logging.getLogger(name)


def get_dispatcher_logger() -> logging.Logger:
    # отдельный логгер: прогресс загрузок фильтруется по имени
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.dispatcher")
