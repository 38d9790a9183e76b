"""
Шаблоны уведомлений жизненного цикла встречи.

Шаблон это пара (subject, body) с плейсхолдерами str.format_map.
Отсутствующие ключи рендерятся пустой строкой.
"""

from __future__ import annotations

from typing import Any

TEMPLATES: dict[str, tuple[str, str]] = {
    "new_meeting_request": (
        "New Meeting Request",
        "A new {meeting_type} meeting request was received. Please check the dashboard.",
    ),
    "counselor_assignment": (
        "New Client Assignment",
        "You have been assigned a {meeting_type} session.{returning_note}",
    ),
    "counselor_assigned": (
        "Counselor Assigned",
        "A counselor has been assigned to your booking. Please choose a time.",
    ),
    "meeting_time_selected": (
        "Meeting Time Selected",
        "The client selected {meeting_date} {meeting_time}. Please respond before {deadline}.",
    ),
    "meeting_confirmed": (
        "Meeting Confirmed",
        "Your {meeting_type} session on {meeting_date} at {meeting_time} is confirmed.",
    ),
    "meeting_cancelled": (
        "Meeting Cancelled",
        "The session on {meeting_date} {meeting_time} was cancelled. Reason: {reason}",
    ),
    "meeting_no_show": (
        "Meeting Marked As No-Show",
        "The session on {meeting_date} {meeting_time} was reported as a no-show.",
    ),
    "meeting_completed": (
        "Session Completed",
        "Your session has been completed. You can now rate it.",
    ),
    "session_reminder": (
        "Session Reminder",
        "Your {meeting_type} session starts at {meeting_time} ({minutes_left} min). "
        "Join from your dashboard a few minutes early.",
    ),
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(template: str, data: dict[str, Any]) -> tuple[str, str]:
    try:
        subject, body = TEMPLATES[template]
    except KeyError as e:
        raise ValueError(f"unknown_template: {template}") from e
    values = _Blank({k: "" if v is None else v for k, v in (data or {}).items()})
    return subject.format_map(values), body.format_map(values)
