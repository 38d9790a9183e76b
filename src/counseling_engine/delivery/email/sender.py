"""
SMTP-отправка email-уведомлений.

Важно:
- Не логировать содержимое писем (issue_description и т.п.)
- Логировать только метаданные (шаблон, статус, message-id)
"""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any

from counseling_engine.common.config import get_settings
from counseling_engine.common.logging import get_project_logger
from counseling_engine.delivery.base import DeliveryResult, Notifier, fail_result, ok_result
from counseling_engine.delivery.templates import render

log = get_project_logger()


class SMTPEmailNotifier(Notifier):
    def __init__(self) -> None:
        self.s = get_settings()

    def notify(self, recipient: str, template: str, data: dict[str, Any]) -> DeliveryResult:
        if not recipient:
            return fail_result("smtp", "recipient_empty")
        if not self.s.smtp_host:
            return fail_result("smtp", "SMTP_HOST_not_set")

        subject, body = render(template, data)
        msg = EmailMessage()
        msg["From"] = self.s.email_from
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(body)

        try:
            with smtplib.SMTP(
                self.s.smtp_host, self.s.smtp_port, timeout=self.s.smtp_timeout_sec
            ) as smtp:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()

                if self.s.smtp_user and self.s.smtp_pass:
                    smtp.login(self.s.smtp_user, self.s.smtp_pass)

                smtp.send_message(msg)

            log.info(
                "email_sent",
                extra={"payload": {"template": template, "provider": "smtp"}},
            )
            return ok_result("smtp", message_id=msg.get("Message-ID"))
        except (smtplib.SMTPException, OSError) as e:
            log.error(
                "email_send_failed",
                extra={"payload": {"template": template, "err": str(e)[:200]}},
            )
            return fail_result("smtp", str(e))
