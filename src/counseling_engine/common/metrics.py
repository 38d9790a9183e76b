"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Счётчики переходов встреч, конфликтов слотов, вызовов видеопровайдера
- Результаты последнего прогона reconciler
- Используется API Gateway и воркером reconciliation
"""

from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.routing import Match

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

# Общее количество HTTP-запросов
REQUESTS_TOTAL = Counter(
    "counseling_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "counseling_http_request_latency_ms",
    "Задержка HTTP запроса (мс)",
    ["service", "route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

MEETING_TRANSITIONS_TOTAL = Counter(
    "counseling_meeting_transitions_total",
    "Применённые переходы статуса встречи",
    ["from_status", "to_status", "source"],  # source=api|reconciler
)

SLOT_CONFLICTS_TOTAL = Counter(
    "counseling_slot_conflicts_total",
    "Проигранные гонки за слот",
)

VIDEO_PROVIDER_CALLS_TOTAL = Counter(
    "counseling_video_provider_calls_total",
    "Вызовы видеопровайдера",
    ["operation", "result"],  # result=ok|retry|failed|cb_open
)

VIDEO_CIRCUIT_BREAKER_OPEN = Gauge(
    "counseling_video_circuit_breaker_open",
    "Состояние circuit breaker видеопровайдера (1=open, 0=closed/half_open)",
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "counseling_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)

RECONCILE_RUNS_TOTAL = Counter(
    "counseling_reconcile_runs_total",
    "Количество запусков reconciler",
    ["source", "result"],  # source=job|admin, result=ok|partial
)

RECONCILE_LAST = Gauge(
    "counseling_reconcile_last",
    "Результаты последнего прогона reconciler",
    ["kind"],  # expired|grace_resolved|overdue_resolved|skipped|reminded
)


def record_transition(from_status, to_status, *, source: str = "api") -> None:
    MEETING_TRANSITIONS_TOTAL.labels(
        from_status=getattr(from_status, "value", str(from_status)),
        to_status=getattr(to_status, "value", str(to_status)),
        source=source,
    ).inc()


def record_video_call(operation: str, result: str) -> None:
    VIDEO_PROVIDER_CALLS_TOTAL.labels(operation=operation, result=result).inc()


def record_reconcile_result(
    *,
    source: str,
    expired: int,
    grace_resolved: int,
    overdue_resolved: int,
    skipped: int,
    reminded: int = 0,
) -> None:
    result = "partial" if skipped > 0 else "ok"
    RECONCILE_RUNS_TOTAL.labels(source=source, result=result).inc()
    RECONCILE_LAST.labels(kind="expired").set(max(0, expired))
    RECONCILE_LAST.labels(kind="grace_resolved").set(max(0, grace_resolved))
    RECONCILE_LAST.labels(kind="overdue_resolved").set(max(0, overdue_resolved))
    RECONCILE_LAST.labels(kind="skipped").set(max(0, skipped))
    RECONCILE_LAST.labels(kind="reminded").set(max(0, reminded))


def refresh_video_metrics() -> None:
    try:
        from counseling_engine.services.video_service import get_video_circuit_breaker_state

        cb = get_video_circuit_breaker_state()
        VIDEO_CIRCUIT_BREAKER_OPEN.set(1 if cb.state == "open" else 0)
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="video_metrics").inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def route_template(request: Request) -> str:
    """
    Полный шаблон маршрута с префиксом (/v1/bookings/{meeting_id}).
    Путь с id в метку не попадает: у метки должно быть конечное число значений.
    """
    partial: str | None = None
    for candidate in request.app.routes:
        match, _ = candidate.matches(request.scope)
        if match == Match.FULL:
            return getattr(candidate, "path", "unmatched")
        if match == Match.PARTIAL and partial is None:
            partial = getattr(candidate, "path", None)
    return partial or "unmatched"


def setup_metrics_endpoint(app: FastAPI, *, service: str = "api-gateway") -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        method = request.method
        route = route_template(request)
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(
            service=service,
            route=route,
            method=method,
            status=status_code,
        ).inc()
        HTTP_REQUEST_LATENCY_MS.labels(
            service=service,
            route=route,
            method=method,
        ).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        refresh_video_metrics()
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
