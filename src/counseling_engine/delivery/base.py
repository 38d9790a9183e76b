"""
Базовые интерфейсы доставки уведомлений.

Назначение:
- Единый контракт notify(recipient, template, data) для всех каналов
- Возможность переключения провайдера через ENV (NOTIFY_PROVIDER)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass
class DeliveryResult:
    """
    Результат доставки.
    """

    ok: bool
    provider: str
    message_id: str | None = None
    error: str | None = None


def ok_result(provider: str, message_id: str | None = None) -> DeliveryResult:
    return DeliveryResult(ok=True, provider=provider, message_id=message_id)


def fail_result(provider: str, error: str) -> DeliveryResult:
    return DeliveryResult(ok=False, provider=provider, error=error[:300])


class Notifier(Protocol):
    """
    Контракт провайдера уведомлений.
    """

    def notify(self, recipient: str, template: str, data: dict[str, Any]) -> DeliveryResult: ...
