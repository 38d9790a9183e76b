"""
Логирование проекта.

Назначение:
- stdout, JSON по умолчанию, text для локальной отладки (LOG_FORMAT=text)
- каждая запись помечается service (SERVICE_NAME): api-gateway / worker-reconciliation
- payload чистится от чувствительных полей (токены комнат, описание обращения)

События пишутся snake_case-именем, данные в extra={"payload": {...}}.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from counseling_engine.common.config import get_settings

PROJECT_LOGGER = "counseling-engine"

# Ключи, значения которых никогда не попадают в лог
REDACTED_KEYS = frozenset(
    {
        "token",
        "room_token",
        "api_key",
        "authorization",
        "password",
        "issue_description",
        "feedback",
    }
)
REDACTED = "***"


def redact(payload: Any) -> Any:
    """Рекурсивно маскирует чувствительные ключи в dict/list."""
    if isinstance(payload, dict):
        return {
            k: (REDACTED if str(k).lower() in REDACTED_KEYS else redact(v))
            for k, v in payload.items()
        }
    if isinstance(payload, list):
        return [redact(v) for v in payload]
    return payload


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict):
            doc["payload"] = redact(extra_payload)
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Человекочитаемый формат: payload дописывается key=value."""

    def __init__(self, service: str) -> None:
        super().__init__(
            fmt=f"%(asctime)s %(levelname)s {service} %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict) and extra_payload:
            clean = redact(extra_payload)
            line += " " + " ".join(f"{k}={clean[k]}" for k in sorted(clean))
        return line


def _build_formatter() -> logging.Formatter:
    s = get_settings()
    service = s.service_name or PROJECT_LOGGER
    if (s.log_format or "").lower() == "text":
        return TextFormatter(service)
    return JsonFormatter(service)


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Повторный вызов (reload uvicorn, воркер) не добавляет второй хэндлер
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter())
    root.addHandler(handler)

    for name in ("uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)
    # SQL-эхо только при DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if level <= logging.DEBUG else logging.WARNING
    )


def get_project_logger(name: str = PROJECT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)
