"""
Версии контрактов (WS/HTTP).

HTTP_API_VERSION попадает в OpenAPI (scripts/export_openapi.py),
WS_SCHEMA_VERSION в каждое событие канала присутствия.
Поднимать при несовместимых изменениях полей MeetingResponse / событий.
"""

from __future__ import annotations

WS_SCHEMA_VERSION = "v1"
HTTP_API_VERSION = "v1"

# Версии, которые клиенты WS ещё могут запросить
SUPPORTED_WS_SCHEMA_VERSIONS = frozenset({WS_SCHEMA_VERSION})


def is_supported_ws_version(version: str | None) -> bool:
    """Пустая версия трактуется как текущая."""
    return not version or version in SUPPORTED_WS_SCHEMA_VERSIONS
