"""
Runtime readiness checks for production rollout.
"""

from __future__ import annotations

from dataclasses import dataclass

from upload_dispatcher.common.config import get_settings
from upload_dispatcher.common.errors import AppError
from upload_dispatcher.common.logging import get_project_logger
from upload_dispatcher.queue.base import TaskQueue
from upload_dispatcher.queue.registry import default_registry, url_scheme
from upload_dispatcher.uploader.gdrive import CHUNK_ALIGN

log = get_project_logger()


@dataclass
class ReadinessIssue:
    severity: str  # error|warning
    code: str
    message: str


@dataclass
class ReadinessState:
    ready: bool
    issues: list[ReadinessIssue]


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


def evaluate_readiness(*, queue: TaskQueue | None = None) -> ReadinessState:
    s = get_settings()
    issues: list[ReadinessIssue] = []
    is_prod = _is_prod_env(s.app_env)

    auth_mode = (s.auth_mode or "").strip().lower()
    if auth_mode not in {"api_key", "none"}:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="auth_mode_unknown",
                message=f"Неизвестный AUTH_MODE={auth_mode}",
            )
        )
    if auth_mode == "api_key" and not (s.api_keys or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error",
                code="auth_api_keys_empty",
                message="AUTH_MODE=api_key требует непустой API_KEYS",
            )
        )

    scheme = url_scheme(s.store_url)
    if scheme not in default_registry().schemes():
        issues.append(
            ReadinessIssue(
                severity="error",
                code="store_scheme_unknown",
                message=f"STORE_URL: неизвестная схема {scheme or '<empty>'}",
            )
        )
    if scheme == "mem" and not (s.store_localfile or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error" if is_prod else "warning",
                code="store_not_durable",
                message="mem:// без STORE_LOCALFILE теряет задачи при рестарте",
            )
        )

    provider = (s.uploader_provider or "").strip().lower()
    if provider not in {"gdrive", "mock"}:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="uploader_provider_unknown",
                message=f"Неизвестный UPLOADER_PROVIDER={provider}",
            )
        )
    if provider == "gdrive" and not (s.gdrive_access_token or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error" if is_prod else "warning",
                code="gdrive_access_token_empty",
                message="UPLOADER_PROVIDER=gdrive требует GDRIVE_ACCESS_TOKEN",
            )
        )
    if provider == "gdrive" and int(s.gdrive_chunk_size_bytes) % CHUNK_ALIGN != 0:
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="gdrive_chunk_size_unaligned",
                message="GDRIVE_CHUNK_SIZE_BYTES не кратен 256 KiB и будет округлён вниз",
            )
        )

    rate_on = float(s.upload_rate_bytes_per_sec) > 0
    capacity_on = int(s.upload_rate_capacity_bytes) > 0
    if rate_on != capacity_on:
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="rate_limit_partially_configured",
                message="Ограничение скорости выключено: нужны и UPLOAD_RATE_BYTES_PER_SEC, "
                "и UPLOAD_RATE_CAPACITY_BYTES",
            )
        )

    if is_prod:
        if auth_mode == "none":
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="auth_none_in_prod",
                    message="AUTH_MODE=none запрещен в prod",
                )
            )
        if "*" in (s.cors_allowed_origins or ""):
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="cors_wildcard_in_prod",
                    message="CORS wildcard '*' запрещен в prod",
                )
            )
        if provider == "mock":
            issues.append(
                ReadinessIssue(
                    severity="warning",
                    code="mock_uploader_in_prod",
                    message="В prod используется mock-загрузчик",
                )
            )

    if queue is not None:
        try:
            queue.ping()
        except AppError as e:
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="store_unavailable",
                    message=f"Хранилище задач недоступно: {e.message}",
                )
            )

    ready = all(i.severity != "error" for i in issues)
    return ReadinessState(ready=ready, issues=issues)


def enforce_startup_readiness(
    *, service_name: str, queue: TaskQueue | None = None
) -> ReadinessState:
    s = get_settings()
    state = evaluate_readiness(queue=queue)
    errors = [i for i in state.issues if i.severity == "error"]

    if errors:
        log.error(
            "startup_readiness_failed",
            extra={
                "payload": {
                    "service": service_name,
                    "app_env": s.app_env,
                    "error_codes": [e.code for e in errors],
                }
            },
        )
    else:
        log.info(
            "startup_readiness_ok",
            extra={"payload": {"service": service_name, "app_env": s.app_env}},
        )

    if _is_prod_env(s.app_env) and errors:
        msg = ", ".join(e.code for e in errors)
        raise RuntimeError(f"startup readiness failed for {service_name}: {msg}")
    return state
