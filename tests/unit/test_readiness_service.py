from __future__ import annotations

import pytest

from upload_dispatcher.common.config import get_settings
from upload_dispatcher.common.errors import StoreUnavailableError
from upload_dispatcher.queue.memory import MemoryTaskQueue
from upload_dispatcher.services.readiness_service import (
    enforce_startup_readiness,
    evaluate_readiness,
)

_KEYS = (
    "app_env",
    "auth_mode",
    "api_keys",
    "cors_allowed_origins",
    "store_url",
    "store_localfile",
    "uploader_provider",
    "gdrive_access_token",
    "upload_rate_bytes_per_sec",
    "upload_rate_capacity_bytes",
)


@pytest.fixture()
def settings_snapshot():
    s = get_settings()
    snapshot = {k: getattr(s, k) for k in _KEYS}
    try:
        yield s
    finally:
        for k, v in snapshot.items():
            setattr(s, k, v)


def test_readiness_prod_fails_on_unsafe_defaults(settings_snapshot) -> None:
    s = settings_snapshot
    s.app_env = "prod"
    s.auth_mode = "none"
    s.cors_allowed_origins = "*"
    s.store_url = "mem://collection/id"
    s.store_localfile = None
    s.uploader_provider = "gdrive"
    s.gdrive_access_token = None

    state = evaluate_readiness()
    codes = {i.code for i in state.issues}
    assert state.ready is False
    assert {
        "auth_none_in_prod",
        "cors_wildcard_in_prod",
        "store_not_durable",
        "gdrive_access_token_empty",
    } <= codes

    with pytest.raises(RuntimeError):
        enforce_startup_readiness(service_name="api-gateway")


def test_readiness_dev_allows_defaults(settings_snapshot) -> None:
    s = settings_snapshot
    s.app_env = "dev"
    s.auth_mode = "none"
    s.store_url = "mem://collection/id"
    s.store_localfile = None
    s.uploader_provider = "gdrive"
    s.gdrive_access_token = None

    state = evaluate_readiness()
    assert state.ready is True
    severities = {i.code: i.severity for i in state.issues}
    assert severities["gdrive_access_token_empty"] == "warning"
    assert severities["store_not_durable"] == "warning"
    assert enforce_startup_readiness(service_name="api-gateway").ready is True


def test_readiness_flags_config_errors(settings_snapshot) -> None:
    s = settings_snapshot
    s.app_env = "dev"
    s.auth_mode = "api_key"
    s.api_keys = ""
    s.store_url = "ftp://nowhere"
    s.uploader_provider = "dropbox"
    s.upload_rate_bytes_per_sec = 1000.0
    s.upload_rate_capacity_bytes = 0

    codes = {i.code for i in evaluate_readiness().issues}
    assert {
        "auth_api_keys_empty",
        "store_scheme_unknown",
        "uploader_provider_unknown",
        "rate_limit_partially_configured",
    } <= codes


def test_readiness_reports_unreachable_store(settings_snapshot, monkeypatch) -> None:
    s = settings_snapshot
    s.app_env = "dev"
    s.auth_mode = "none"
    queue = MemoryTaskQueue()

    def _down():
        raise StoreUnavailableError("SQL хранилище недоступно")

    monkeypatch.setattr(queue, "ping", _down)
    state = evaluate_readiness(queue=queue)
    assert state.ready is False
    assert "store_unavailable" in {i.code for i in state.issues}
