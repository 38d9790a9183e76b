"""
Публикация событий жизненного цикла встречи.

Назначение:
- publish(topic, event, payload) в Redis-канал events:<topic>
- темы: user:<id> (клиент/консультант) и admin
- ошибки публикации логируются и не влияют на основную операцию
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from counseling_engine.common.logging import get_project_logger
from counseling_engine.realtime.redis import redis_client

log = get_project_logger()

CHANNEL_PREFIX = "events:"
ADMIN_TOPIC = "admin"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def channel_for(topic: str) -> str:
    return f"{CHANNEL_PREFIX}{topic}"


class EventPublisher:
    def __init__(self, client_factory=None) -> None:
        self._client_factory = client_factory or redis_client

    def publish(self, topic: str, event: str, payload: dict[str, Any] | None = None) -> bool:
        message = json.dumps(
            {
                "event": event,
                "topic": topic,
                "payload": payload or {},
                "ts": datetime.now(UTC).isoformat(),
            },
            ensure_ascii=False,
            default=str,
        )
        try:
            self._client_factory().publish(channel_for(topic), message)
            return True
        except Exception as e:
            log.warning(
                "event_publish_failed",
                extra={"payload": {"topic": topic, "event": event, "error": str(e)[:300]}},
            )
            return False

    def to_user(self, user_id: str | None, event: str, payload: dict[str, Any] | None = None):
        if not user_id:
            return False
        return self.publish(user_topic(user_id), event, payload)

    def to_admin(self, event: str, payload: dict[str, Any] | None = None) -> bool:
        return self.publish(ADMIN_TOPIC, event, payload)


_PUBLISHER: EventPublisher | None = None


def get_publisher() -> EventPublisher:
    global _PUBLISHER
    if _PUBLISHER is None:
        _PUBLISHER = EventPublisher()
    return _PUBLISHER


def set_publisher(publisher: EventPublisher | None) -> None:
    """
    Подмена публикатора (тесты, альтернативный транспорт).
    """
    global _PUBLISHER
    _PUBLISHER = publisher
