"""
API Gateway (FastAPI).

Функции:
- /health
- /metrics
- HTTP API жизненного цикла встреч
- WebSocket канал присутствия (ретрансляция событий из Redis)

Архитектурно:
- сервисы публикуют события в Redis pubsub (events:user:<id>, events:admin)
- gateway держит один PresenceRegistry на процесс (app.state.presence)
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from apps.api_gateway.routers.admin import router as admin_router
from apps.api_gateway.routers.bookings import router as bookings_router
from apps.api_gateway.routers.counselors import router as counselors_router
from apps.api_gateway.ws import ws_router
from counseling_engine.common.config import get_settings
from counseling_engine.common.logging import get_project_logger, setup_logging
from counseling_engine.common.metrics import setup_metrics_endpoint
from counseling_engine.contracts.versions import HTTP_API_VERSION
from counseling_engine.realtime.presence import PresenceRegistry
from counseling_engine.services.readiness_service import enforce_startup_readiness
from counseling_engine.storage.db import init_schema

log = get_project_logger()

# Методы и заголовки, которые использует HTTP API встреч (идентичность: Bearer, X-API-Key, dev-заголовки)
CORS_ALLOW_METHODS = ["GET", "POST", "OPTIONS"]
CORS_ALLOW_HEADERS = ["Authorization", "Content-Type", "X-API-Key", "X-User-Id", "X-User-Role"]


def _parse_origins(raw: str) -> list[str]:
    origins = [o.strip() for o in (raw or "").split(",") if o.strip()]
    return origins or ["*"]


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


def _cors_params() -> tuple[list[str], bool]:
    settings = get_settings()
    allow_origins = _parse_origins(settings.cors_allowed_origins)
    allow_credentials = bool(settings.cors_allow_credentials)

    if _is_prod_env(settings.app_env) and "*" in allow_origins:
        raise RuntimeError("CORS wildcard '*' запрещён в APP_ENV=prod")

    # '*' нельзя использовать вместе с credentials=true
    if "*" in allow_origins:
        allow_credentials = False

    return allow_origins, allow_credentials


def _create_app() -> FastAPI:
    app = FastAPI(
        title="Counseling Meeting Engine",
        version="0.1.0",
        description=f"Meeting lifecycle API {HTTP_API_VERSION}",
    )
    allow_origins, allow_credentials = _cors_params()

    # CORS (настраивается через ENV; в prod wildcard запрещён)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
        allow_credentials=allow_credentials,
    )

    setup_metrics_endpoint(app)

    app.state.presence = PresenceRegistry()
    app.state.relays = {}

    @app.get("/health")
    def health() -> dict[str, Any]:
        # liveness: без обращений к БД/Redis (их проверяет /v1/admin/system/readiness)
        return {"ok": True}

    app.include_router(bookings_router, prefix="/v1")
    app.include_router(counselors_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1")
    app.include_router(ws_router, prefix="/v1")

    return app


setup_logging()
enforce_startup_readiness(service_name="api-gateway")

# Автосоздание таблиц вне prod (чтобы проект стартовал без ручных миграций)
if not _is_prod_env(get_settings().app_env):
    init_schema()
log.info("db_ready")

app = _create_app()
