"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Счётчики HTTP и исходов попыток загрузки
- Глубина очереди и DLQ, состояние диспетчера
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

# Общее количество HTTP-запросов
REQUESTS_TOTAL = Counter(
    "upload_dispatcher_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "upload_dispatcher_http_request_latency_ms",
    "Задержка HTTP запроса (мс)",
    ["service", "route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

# Попытки загрузки
UPLOAD_ATTEMPTS_TOTAL = Counter(
    "upload_dispatcher_upload_attempts_total",
    "Количество попыток загрузки по исходу",
    ["provider", "result"],  # uploaded|failed|dead_lettered|paused|cancelled
)

UPLOAD_ATTEMPT_LATENCY_MS = Histogram(
    "upload_dispatcher_upload_attempt_latency_ms",
    "Длительность попытки загрузки (мс)",
    ["provider"],
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 300000),
)

UPLOADED_BYTES_TOTAL = Counter(
    "upload_dispatcher_uploaded_bytes_total",
    "Объём успешно загруженных данных (байт)",
    ["provider"],
)

QUEUE_DEPTH = Gauge(
    "upload_dispatcher_queue_depth",
    "Текущее количество pending-задач",
)

DLQ_DEPTH = Gauge(
    "upload_dispatcher_dlq_depth",
    "Текущее количество задач в DLQ",
)

DISPATCHER_PAUSED = Gauge(
    "upload_dispatcher_paused",
    "Состояние диспетчера (1=paused, 0=running)",
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "upload_dispatcher_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)

SYSTEM_READINESS = Gauge(
    "upload_dispatcher_system_readiness",
    "Runtime readiness check status (1=ready, 0=not ready)",
)


@contextmanager
def track_upload_latency(provider: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        UPLOAD_ATTEMPT_LATENCY_MS.labels(provider=provider).observe(elapsed_ms)


def record_upload_attempt(*, provider: str, result: str, uploaded_bytes: int = 0) -> None:
    UPLOAD_ATTEMPTS_TOTAL.labels(provider=provider, result=result).inc()
    if uploaded_bytes > 0:
        UPLOADED_BYTES_TOTAL.labels(provider=provider).inc(uploaded_bytes)


def set_dispatcher_paused(paused: bool) -> None:
    DISPATCHER_PAUSED.set(1 if paused else 0)


def refresh_queue_metrics(queue) -> None:
    if queue is None:
        return
    try:
        QUEUE_DEPTH.set(queue.count())
        DLQ_DEPTH.set(len(queue.list_dead_letters()))
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()


def refresh_system_readiness_metrics(queue) -> None:
    try:
        from upload_dispatcher.services.readiness_service import evaluate_readiness

        state = evaluate_readiness(queue=queue)
        SYSTEM_READINESS.set(1 if state.ready else 0)
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="readiness_metrics").inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI, *, queue_getter: Callable[[], object] | None = None) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    queue_getter - откуда брать текущую очередь для gauge'ей глубины.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(
            service="api-gateway",
            route=route,
            method=method,
            status=status_code,
        ).inc()
        HTTP_REQUEST_LATENCY_MS.labels(
            service="api-gateway",
            route=route,
            method=method,
        ).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        queue = queue_getter() if queue_getter is not None else None
        refresh_queue_metrics(queue)
        refresh_system_readiness_metrics(queue)
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
