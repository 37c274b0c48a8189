"""
Централизованная конфигурация проекта (ENV / .env).

Важно:
- настройки читаются из .env и переменных окружения
- типизированные значения через pydantic-settings
- любой параметр можно передать файлом: <NAME>_FILE=/run/secrets/...
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Runtime
    # -------------------------------------------------------------------------
    app_env: str = Field(default="dev", alias="APP_ENV")
    service_name: str = Field(default="upload-dispatcher", alias="SERVICE_NAME")
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=5151, alias="API_PORT")
    cors_allowed_origins: str = Field(default="*", alias="CORS_ALLOWED_ORIGINS")

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------
    auth_mode: str = Field(default="none", alias="AUTH_MODE")  # api_key|none
    api_keys: str = Field(default="", alias="API_KEYS")

    # -------------------------------------------------------------------------
    # Store (очередь задач)
    # -------------------------------------------------------------------------
    # mem://collection/<key_field> | redis://host:6379/0?collection=tasks | sqlite:///tasks.db
    store_url: str = Field(default="mem://collection/id", alias="STORE_URL")
    store_localfile: str | None = Field(default=None, alias="STORE_LOCALFILE")

    # -------------------------------------------------------------------------
    # Dispatcher
    # -------------------------------------------------------------------------
    dispatcher_enabled: bool = Field(default=True, alias="DISPATCHER_ENABLED")
    dispatcher_poll_interval_sec: float = Field(
        default=1.0, alias="DISPATCHER_POLL_INTERVAL_SEC"
    )
    dispatcher_start_paused: bool = Field(default=False, alias="DISPATCHER_START_PAUSED")

    # Token bucket: rate<=0 или capacity<=0 - без ограничения
    upload_rate_bytes_per_sec: float = Field(default=0.0, alias="UPLOAD_RATE_BYTES_PER_SEC")
    upload_rate_capacity_bytes: int = Field(default=0, alias="UPLOAD_RATE_CAPACITY_BYTES")

    # Retry / DLQ
    retry_max_attempts: int = Field(default=5, alias="RETRY_MAX_ATTEMPTS")  # <=0 - без потолка
    retry_backoff_base_sec: float = Field(default=2.0, alias="RETRY_BACKOFF_BASE_SEC")
    retry_backoff_max_sec: float = Field(default=300.0, alias="RETRY_BACKOFF_MAX_SEC")

    # -------------------------------------------------------------------------
    # Uploader
    # -------------------------------------------------------------------------
    uploader_provider: str = Field(default="gdrive", alias="UPLOADER_PROVIDER")  # gdrive|mock
    gdrive_api_base: str = Field(default="https://www.googleapis.com", alias="GDRIVE_API_BASE")
    gdrive_access_token: str | None = Field(default=None, alias="GDRIVE_ACCESS_TOKEN")
    gdrive_chunk_size_bytes: int = Field(
        default=8 * 1024 * 1024, alias="GDRIVE_CHUNK_SIZE_BYTES"
    )  # кратно 256 KiB
    gdrive_timeout_sec: int = Field(default=60, alias="GDRIVE_TIMEOUT_SEC")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")  # json|text

    def model_post_init(self, __context) -> None:
        _apply_file_overrides(self)


def _apply_file_overrides(settings: Settings) -> None:
    alias_to_field = {}
    for name, field in type(settings).model_fields.items():
        alias = field.alias or name
        alias_to_field[str(alias)] = name
        alias_to_field[str(name)] = name

    for key, path in os.environ.items():
        if not key.endswith("_FILE"):
            continue
        base = key[: -len("_FILE")]
        target = alias_to_field.get(base)
        if not target:
            continue
        file_path = (path or "").strip()
        if not file_path:
            continue
        try:
            raw = Path(file_path).read_text(encoding="utf-8")
        except Exception as e:
            logging.getLogger("upload-dispatcher").error(
                "config_file_read_failed",
                extra={"payload": {"env_key": key, "path": file_path, "error": str(e)[:200]}},
            )
            raise RuntimeError(f"Failed to read {key} from {file_path}") from e
        setattr(settings, target, raw.strip())


_SETTINGS = Settings()


def get_settings() -> Settings:
    return _SETTINGS
