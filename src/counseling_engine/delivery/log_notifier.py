"""
Notifier без внешней доставки: пишет событие в лог (dev/тесты).
"""

from __future__ import annotations

from typing import Any

from counseling_engine.common.logging import get_project_logger
from counseling_engine.delivery.base import DeliveryResult, Notifier, ok_result
from counseling_engine.delivery.templates import render

log = get_project_logger()


class LogNotifier(Notifier):
    def notify(self, recipient: str, template: str, data: dict[str, Any]) -> DeliveryResult:
        subject, _ = render(template, data)
        log.info(
            "notification_logged",
            extra={"payload": {"template": template, "subject": subject}},
        )
        return ok_result("log")
