from __future__ import annotations

import smtplib

import pytest

from counseling_engine.delivery.email import sender as email_sender
from counseling_engine.delivery.email.sender import SMTPEmailNotifier
from counseling_engine.delivery.log_notifier import LogNotifier
from counseling_engine.delivery.templates import TEMPLATES, render
from counseling_engine.services import notification_service
from counseling_engine.services.notification_service import dispatch_notification


class _FakeSMTP:
    instances: list["_FakeSMTP"] = []

    def __init__(self, host: str, port: int, timeout: int) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.sent: list = []
        self.logged_in: tuple[str, str] | None = None
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None

    def ehlo(self) -> None:
        return None

    def has_extn(self, name: str) -> bool:
        return False

    def login(self, user: str, password: str) -> None:
        self.logged_in = (user, password)

    def send_message(self, msg) -> None:
        self.sent.append(msg)


class _BrokenSMTP(_FakeSMTP):
    def send_message(self, msg) -> None:
        raise smtplib.SMTPServerDisconnected("gone")


def test_render_fills_placeholders_and_blanks_missing() -> None:
    subject, body = render("meeting_cancelled", {"meeting_date": "2026-03-03", "reason": None})
    assert subject == "Meeting Cancelled"
    assert "2026-03-03" in body
    assert "{" not in body


def test_render_unknown_template() -> None:
    with pytest.raises(ValueError):
        render("nope", {})


def test_every_template_renders_without_data() -> None:
    for name in TEMPLATES:
        subject, _ = render(name, {})
        assert subject


def test_dispatch_without_recipient_is_noop(side_effects) -> None:
    result = dispatch_notification(None, "meeting_completed", {})
    assert result.ok is False
    assert side_effects.notifier.sent == []


def test_dispatch_swallows_notifier_errors() -> None:
    class _Exploding:
        def notify(self, recipient, template, data):
            raise RuntimeError("smtp down")

    notification_service.set_notifier(_Exploding())
    result = dispatch_notification("a@b.c", "meeting_completed", {})
    assert result.ok is False
    assert "smtp down" in (result.error or "")


def test_log_notifier_is_default_provider() -> None:
    notification_service.set_notifier(None)
    assert isinstance(notification_service.get_notifier(), LogNotifier)
    assert dispatch_notification("a@b.c", "meeting_completed", {}).ok is True


@pytest.fixture()
def smtp_settings():
    from counseling_engine.common.config import get_settings

    s = get_settings()
    keys = ["smtp_host", "smtp_port", "smtp_user", "smtp_pass", "email_from"]
    snapshot = {k: getattr(s, k) for k in keys}
    try:
        yield s
    finally:
        for k, v in snapshot.items():
            setattr(s, k, v)


def test_smtp_notifier_sends_rendered_message(monkeypatch, smtp_settings) -> None:
    _FakeSMTP.instances = []
    monkeypatch.setattr(email_sender.smtplib, "SMTP", _FakeSMTP)
    smtp_settings.smtp_host = "smtp.local"
    smtp_settings.smtp_port = 2525
    smtp_settings.smtp_user = "u"
    smtp_settings.smtp_pass = "p"
    smtp_settings.email_from = "noreply@counseling.local"

    result = SMTPEmailNotifier().notify(
        "client@counseling.local", "meeting_confirmed", {"meeting_type": "virtual"}
    )

    assert result.ok is True
    smtp = _FakeSMTP.instances[0]
    assert (smtp.host, smtp.port) == ("smtp.local", 2525)
    assert smtp.logged_in == ("u", "p")
    msg = smtp.sent[0]
    assert msg["To"] == "client@counseling.local"
    assert msg["Subject"] == "Meeting Confirmed"


def test_smtp_notifier_failure_is_result_not_exception(monkeypatch, smtp_settings) -> None:
    monkeypatch.setattr(email_sender.smtplib, "SMTP", _BrokenSMTP)
    smtp_settings.smtp_host = "smtp.local"

    result = SMTPEmailNotifier().notify("x@y.z", "meeting_completed", {})

    assert result.ok is False
    assert result.provider == "smtp"


def test_smtp_notifier_without_host(smtp_settings) -> None:
    smtp_settings.smtp_host = None
    result = SMTPEmailNotifier().notify("x@y.z", "meeting_completed", {})
    assert result.error == "SMTP_HOST_not_set"
