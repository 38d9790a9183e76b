"""
Генерация идентификаторов.

Назначение:
- meeting_id: сортируемый по времени создания, безопасен как часть имени комнаты Daily
- counselor/client id для dev-сидинга
- connection_id для WS-подключений
"""

from __future__ import annotations

import secrets
import uuid
from datetime import UTC, datetime


def new_uuid() -> str:
    return str(uuid.uuid4())


def _short(n: int = 5) -> str:
    return secrets.token_hex(n)


def new_meeting_id(prefix: str = "mtg") -> str:
    """
    Идентификатор встречи: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>.
    Только [a-z0-9_], поэтому годится для meeting-<id> в Daily.
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    return f"{prefix}_{ts}_{_short()}"


def new_counselor_id() -> str:
    return f"co_{_short(4)}"


def new_client_id() -> str:
    return f"cl_{_short(4)}"


def new_connection_id(user_id: str | None = None) -> str:
    """Идентификатор WS-подключения (user_id в префиксе упрощает чтение логов)."""
    base = f"conn_{_short(8)}"
    return f"{user_id}:{base}" if user_id else base
