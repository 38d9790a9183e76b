"""
Базовые интерфейсы коннекторов (интеграции с внешними системами).

Назначение:
- стандартизировать адаптеры к провайдеру видеокомнат
- отделить "как подключаемся" от жизненного цикла встречи
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol


@dataclass
class VideoRoom:
    """
    Комната у провайдера (минимальный runtime-объект).
    """

    name: str
    url: str
    not_before: datetime | None = None
    expires_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RoomWindow:
    """
    Временное окно комнаты/токена:
    - nbf = начало - join_early
    - exp = конец + expiry_after_end
    """

    scheduled_at: datetime
    duration_min: int
    join_early_min: int = 5
    expiry_after_end: timedelta = timedelta(hours=24)

    @property
    def not_before(self) -> datetime:
        return self.scheduled_at - timedelta(minutes=self.join_early_min)

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_min)

    @property
    def expires_at(self) -> datetime:
        return self.ends_at + self.expiry_after_end


def room_name_for(meeting_id: str) -> str:
    return f"meeting-{meeting_id}"


class VideoRoomProvider(Protocol):
    """
    Контракт провайдера видеокомнат.
    """

    def create_room(self, name: str, window: RoomWindow) -> VideoRoom:
        """Создать комнату (идемпотентно по имени)."""
        ...

    def create_token(self, room_name: str, *, is_client: bool, window: RoomWindow) -> str:
        """Выдать токен входа, ограниченный окном комнаты."""
        ...

    def delete_room(self, room_name: str) -> None:
        """Удалить комнату."""
        ...
