"""
Контракты WebSocket-событий (runtime, Python-описание).

Зачем:
- единые названия событий канала присутствия
- сервер ретранслирует события из Redis (events:user:<id>, events:admin)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from .versions import WS_SCHEMA_VERSION

# =============================================================================
# ТИПЫ СОБЫТИЙ
# =============================================================================
WSEventType = Literal["connected", "event", "pong", "error"]


# =============================================================================
# ВЫХОД: connected (server -> client)
# =============================================================================
@dataclass
class ConnectedEvent:
    connection_id: str
    user_id: str
    role: str
    schema_version: str = WS_SCHEMA_VERSION
    event_type: str = "connected"


# =============================================================================
# ВЫХОД: event (server -> client), ретрансляция из Redis
# =============================================================================
@dataclass
class RelayedEvent:
    event: str
    topic: str
    payload: dict[str, Any] = field(default_factory=dict)
    ts: str | None = None
    schema_version: str = WS_SCHEMA_VERSION
    event_type: str = "event"


# =============================================================================
# ВЫХОД: error (server -> client)
# =============================================================================
@dataclass
class ErrorEvent:
    code: str
    message: str
    schema_version: str = WS_SCHEMA_VERSION
    event_type: str = "error"


def to_message(event: ConnectedEvent | RelayedEvent | ErrorEvent) -> dict[str, Any]:
    return asdict(event)
