"""
Сервисный слой: свободные слоты консультанта.

Назначение:
- список свободных "HH:MM" на дату
- правила рабочего дня консультанта (часы, пояс, недоступные даты, лимит в день,
  лимит встреч подряд)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from counseling_engine.common.config import get_settings
from counseling_engine.common.errors import NotFoundError, ValidationError
from counseling_engine.common.logging import get_project_logger
from counseling_engine.common.time import parse_hhmm, resolve_tz, utc_now
from counseling_engine.domain.slots import consecutive_run, generate_slots, is_unavailable
from counseling_engine.storage.db import db_session
from counseling_engine.storage.models import Counselor
from counseling_engine.storage.repositories import CounselorRepository, MeetingRepository

log = get_project_logger()


@dataclass(frozen=True)
class WorkingHours:
    start: str
    end: str
    timezone: str


def working_hours(counselor: Counselor) -> WorkingHours:
    """
    Рабочие часы консультанта с подстановкой дефолтов из настроек.
    Некорректные значения заменяются дефолтами.
    """
    s = get_settings()
    start = counselor.work_start or s.booking_default_work_start
    end = counselor.work_end or s.booking_default_work_end
    try:
        if parse_hhmm(start) >= parse_hhmm(end):
            raise ValueError("empty_working_day")
    except ValueError:
        log.warning(
            "counselor_working_hours_invalid",
            extra={"payload": {"counselor_id": counselor.id, "start": start, "end": end}},
        )
        start, end = s.booking_default_work_start, s.booking_default_work_end
    return WorkingHours(
        start=start,
        end=end,
        timezone=counselor.timezone or s.booking_default_timezone,
    )


def parse_day(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as e:
        raise ValidationError("Некорректная дата", {"date": str(value)[:32]}) from e


def local_today(tz_name: str | None, now: datetime | None = None) -> date:
    return (now or utc_now()).astimezone(resolve_tz(tz_name)).date()


def daily_limit_reached(counselor: Counselor, booked: list[str]) -> bool:
    limit = int(counselor.max_daily_meetings or 0)
    return limit > 0 and len(booked) >= limit


def consecutive_limit_exceeded(
    counselor: Counselor, grid: list[str], booked: list[str], candidate: str
) -> bool:
    """
    maxConsecutiveMeetings: 0 = без ограничения.
    """
    limit = int(counselor.max_consecutive_meetings or 0)
    return limit > 0 and consecutive_run(grid, booked, candidate) > limit


def get_available_slots(
    counselor_id: str, day: str | date, *, now: datetime | None = None
) -> list[str]:
    """
    Свободные времена начала на дату в хронологическом порядке.
    Прошедшая дата, недоступная дата или исчерпанный дневной лимит → [].
    """
    target = parse_day(day)

    with db_session() as s:
        counselor = CounselorRepository(s).get(counselor_id)
        if counselor is None or not counselor.is_active:
            raise NotFoundError("Консультант не найден", {"counselor_id": counselor_id})

        hours = working_hours(counselor)
        if target < local_today(hours.timezone, now):
            return []
        if is_unavailable(target, counselor.unavailable_dates or []):
            return []

        booked = MeetingRepository(s).booked_times(counselor_id, target)
        if daily_limit_reached(counselor, booked):
            return []

        grid = generate_slots(
            hours.start, hours.end, interval_min=get_settings().booking_slot_interval_min
        )
        return [
            t
            for t in grid
            if t not in booked and not consecutive_limit_exceeded(counselor, grid, booked, t)
        ]
