"""
Реестр присутствия: user_id -> {connection_id}.

Создаётся один раз при старте API Gateway и передаётся по ссылке
(app.state.presence). Хранит только локальные WS-подключения процесса.
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from counseling_engine.common.logging import get_project_logger

log = get_project_logger()

Sender = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class _Connection:
    connection_id: str
    user_id: str
    role: str
    send: Sender


class PresenceRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: dict[str, set[str]] = {}
        self._connections: dict[str, _Connection] = {}

    def register(self, user_id: str, connection_id: str, send: Sender, *, role: str = "") -> None:
        with self._lock:
            self._connections[connection_id] = _Connection(connection_id, user_id, role, send)
            self._by_user.setdefault(user_id, set()).add(connection_id)
        log.info(
            "presence_registered",
            extra={"payload": {"user_id": user_id, "connection_id": connection_id}},
        )

    def unregister(self, connection_id: str) -> None:
        with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                return
            ids = self._by_user.get(conn.user_id)
            if ids is not None:
                ids.discard(connection_id)
                if not ids:
                    self._by_user.pop(conn.user_id, None)
        log.info(
            "presence_unregistered",
            extra={"payload": {"user_id": conn.user_id, "connection_id": connection_id}},
        )

    def connections_of(self, user_id: str) -> set[str]:
        with self._lock:
            return set(self._by_user.get(user_id, set()))

    def is_online(self, user_id: str) -> bool:
        return bool(self.connections_of(user_id))

    def online_users(self) -> list[str]:
        with self._lock:
            return sorted(self._by_user)

    async def broadcast_to(self, user_id: str, message: dict[str, Any]) -> int:
        """
        Отправить сообщение во все подключения пользователя.
        Возвращает число успешных отправок; упавшие подключения снимаются.
        """
        with self._lock:
            targets = [self._connections[c] for c in self._by_user.get(user_id, set())]

        delivered = 0
        for conn in targets:
            try:
                await conn.send(message)
                delivered += 1
            except Exception as e:
                log.warning(
                    "presence_send_failed",
                    extra={
                        "payload": {
                            "user_id": user_id,
                            "connection_id": conn.connection_id,
                            "error": str(e)[:300],
                        }
                    },
                )
                self.unregister(conn.connection_id)
        return delivered
