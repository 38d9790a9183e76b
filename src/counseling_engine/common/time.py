"""
Утилиты времени.

Назначение:
- единое "сейчас" в UTC
- разбор настенного времени "HH:MM" и сборка момента начала встречи
  в часовом поясе консультанта
- нормализация naive datetime из БД (SQLite теряет tzinfo)
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """
    naive -> считаем UTC; aware -> переводим в UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_hhmm(value: str) -> time:
    """
    "14:00" -> time(14, 0). Бросает ValueError на некорректном формате.
    """
    m = _HHMM_RE.match((value or "").strip())
    if not m:
        raise ValueError(f"invalid_hhmm: {value!r}")
    return time(int(m.group(1)), int(m.group(2)))


def format_hhmm(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def resolve_tz(name: str | None, fallback: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo((name or "").strip() or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(fallback)


def meeting_start_utc(meeting_date: date, meeting_time: str, tz_name: str | None) -> datetime:
    """
    Дата + "HH:MM" в поясе консультанта -> момент начала в UTC.
    """
    local = datetime.combine(meeting_date, parse_hhmm(meeting_time), tzinfo=resolve_tz(tz_name))
    return local.astimezone(UTC)
