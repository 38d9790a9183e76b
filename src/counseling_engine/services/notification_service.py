"""
Диспетчер уведомлений.

Назначение:
- выбор провайдера (email/log) по NOTIFY_PROVIDER
- fire-and-forget: ошибки доставки логируются и не влияют на переход
"""

from __future__ import annotations

from typing import Any

from counseling_engine.common.config import get_settings
from counseling_engine.common.logging import get_project_logger
from counseling_engine.delivery.base import DeliveryResult, Notifier, fail_result
from counseling_engine.delivery.email.sender import SMTPEmailNotifier
from counseling_engine.delivery.log_notifier import LogNotifier

log = get_project_logger()

_NOTIFIER: Notifier | None = None


def get_notifier() -> Notifier:
    global _NOTIFIER
    if _NOTIFIER is None:
        provider = (get_settings().notify_provider or "log").strip().lower()
        _NOTIFIER = SMTPEmailNotifier() if provider == "email" else LogNotifier()
    return _NOTIFIER


def set_notifier(notifier: Notifier | None) -> None:
    global _NOTIFIER
    _NOTIFIER = notifier


def dispatch_notification(
    recipient: str | None, template: str, data: dict[str, Any] | None = None
) -> DeliveryResult:
    if not recipient:
        return fail_result("none", "recipient_empty")
    try:
        result = get_notifier().notify(recipient, template, data or {})
    except Exception as e:
        log.warning(
            "notification_dispatch_failed",
            extra={"payload": {"template": template, "error": str(e)[:300]}},
        )
        return fail_result("dispatch", str(e))
    if not result.ok:
        log.warning(
            "notification_not_delivered",
            extra={
                "payload": {
                    "template": template,
                    "provider": result.provider,
                    "error": result.error,
                }
            },
        )
    return result
