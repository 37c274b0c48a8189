"""
API Gateway (FastAPI).

Функции:
- /health, /ready
- /metrics
- HTTP API очереди загрузок и управления диспетчером

Архитектурно:
- один процесс: HTTP-обработчики и рабочий поток диспетчера
- Runtime создаётся на старте (lifespan), поток диспетчера останавливается на shutdown
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api_gateway.routers.control import router as control_router
from apps.api_gateway.routers.dead_letters import router as dead_letters_router
from apps.api_gateway.routers.tasks import router as tasks_router
from upload_dispatcher.common.config import get_settings
from upload_dispatcher.common.logging import get_project_logger, setup_logging
from upload_dispatcher.common.metrics import setup_metrics_endpoint
from upload_dispatcher.services.readiness_service import (
    enforce_startup_readiness,
    evaluate_readiness,
)
from upload_dispatcher.services.runtime import Runtime

log = get_project_logger()


def _parse_origins(raw: str) -> list[str]:
    origins = [o.strip() for o in (raw or "").split(",") if o.strip()]
    return origins or ["*"]


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


def _cors_origins() -> list[str]:
    settings = get_settings()
    allow_origins = _parse_origins(settings.cors_allowed_origins)
    if _is_prod_env(settings.app_env) and "*" in allow_origins:
        raise RuntimeError("CORS wildcard '*' запрещён в APP_ENV=prod")
    return allow_origins


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """
    runtime=None - Runtime собирается из настроек на старте приложения.
    Переданный снаружи runtime (тесты, скрипты) тоже запускается и останавливается lifespan'ом.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        rt = runtime or Runtime.from_settings()
        enforce_startup_readiness(service_name="api-gateway", queue=rt.queue)
        app.state.runtime = rt
        rt.start()
        log.info("api_gateway_started")
        try:
            yield
        finally:
            rt.stop()
            app.state.runtime = None
            log.info("api_gateway_stopped")

    app = FastAPI(title="Upload Dispatcher", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    # CORS (настраивается через ENV; в prod wildcard запрещён)
    allow_origins = _cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials="*" not in allow_origins,
    )

    def _current_queue():
        rt = getattr(app.state, "runtime", None)
        return rt.queue if rt is not None else None

    setup_metrics_endpoint(app, queue_getter=_current_queue)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/ready")
    def ready() -> JSONResponse:
        state = evaluate_readiness(queue=_current_queue())
        body = {
            "ready": state.ready,
            "issues": [
                {"severity": i.severity, "code": i.code, "message": i.message}
                for i in state.issues
            ],
        }
        return JSONResponse(body, status_code=200 if state.ready else 503)

    app.include_router(tasks_router)
    app.include_router(control_router)
    app.include_router(dead_letters_router)

    return app


setup_logging()

app = create_app()
