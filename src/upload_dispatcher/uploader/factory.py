"""
Выбор загрузчика по UPLOADER_PROVIDER.
"""

from __future__ import annotations

from upload_dispatcher.common.config import Settings, get_settings
from upload_dispatcher.common.errors import ValidationError

from .base import Uploader


def build_uploader(settings: Settings | None = None) -> Uploader:
    s = settings or get_settings()
    provider = (s.uploader_provider or "gdrive").strip().lower()
    if provider == "gdrive":
        from .gdrive import GoogleDriveUploader

        return GoogleDriveUploader(settings=s)
    if provider == "mock":
        from .mock import MockUploader

        return MockUploader()
    raise ValidationError(
        f"Неизвестный provider загрузчика: {provider}",
        details={"allowed": "gdrive,mock"},
    )
