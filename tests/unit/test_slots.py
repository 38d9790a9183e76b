from __future__ import annotations

from datetime import date, datetime

import pytest

from counseling_engine.common.errors import NotFoundError, ValidationError
from counseling_engine.common.time import meeting_start_utc
from counseling_engine.domain.enums import MeetingStatus
from counseling_engine.domain.slots import (
    consecutive_run,
    generate_slots,
    is_unavailable,
    within_working_hours,
)
from counseling_engine.services import slot_service
from counseling_engine.services.slot_service import get_available_slots


def test_generate_slots_hourly_working_day() -> None:
    assert generate_slots("09:00", "17:00", interval_min=60) == [
        "09:00",
        "10:00",
        "11:00",
        "12:00",
        "13:00",
        "14:00",
        "15:00",
        "16:00",
    ]


def test_generate_slots_excludes_booked_and_keeps_order() -> None:
    slots = generate_slots("09:00", "12:00", interval_min=30, booked=["10:00", "09:30"])
    assert slots == ["09:00", "10:30", "11:00", "11:30"]


def test_generate_slots_end_is_exclusive() -> None:
    assert "17:00" not in generate_slots("09:00", "17:00", interval_min=60)
    assert generate_slots("09:00", "09:00", interval_min=60) == []


def test_generate_slots_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        generate_slots("09:00", "17:00", interval_min=0)


@pytest.mark.parametrize(
    ("value", "expected"),
    [("09:00", True), ("16:59", True), ("17:00", False), ("08:59", False)],
)
def test_within_working_hours(value: str, expected: bool) -> None:
    assert within_working_hours(value, "09:00", "17:00") is expected


def test_is_unavailable_accepts_dates_and_iso_strings() -> None:
    day = date(2026, 3, 3)
    assert is_unavailable(day, ["2026-03-03"])
    assert is_unavailable(day, [datetime(2026, 3, 3, 12, 0)])
    assert not is_unavailable(day, ["2026-03-04", "garbage"])


def test_meeting_start_uses_counselor_timezone() -> None:
    start = meeting_start_utc(date(2026, 3, 3), "10:00", "Europe/Moscow")
    assert (start.hour, start.minute) == (7, 0)


# =============================================================================
# get_available_slots
# =============================================================================
def test_available_slots_exclude_held_times(seed, now, tomorrow) -> None:
    seed.counselor()
    seed.client()
    seed.client("cl-2")
    seed.client("cl-3")
    seed.meeting(status=MeetingStatus.confirmed, meeting_date=tomorrow, meeting_time="10:00")
    seed.meeting(
        "m-2", client_id="cl-2", status=MeetingStatus.time_selected, meeting_date=tomorrow,
        meeting_time="11:00",
    )
    # отменённая встреча слот не держит
    seed.meeting(
        "m-3", client_id="cl-3", status=MeetingStatus.cancelled, meeting_date=tomorrow,
        meeting_time="12:00",
    )

    slots = get_available_slots("co-1", tomorrow.isoformat(), now=now)

    assert "10:00" not in slots
    assert "11:00" not in slots
    assert "12:00" in slots
    assert slots == sorted(slots)
    assert all("09:00" <= s < "17:00" for s in slots)


def test_available_slots_past_date_is_empty(seed, now) -> None:
    seed.counselor()
    assert get_available_slots("co-1", date(2026, 3, 1), now=now) == []


def test_available_slots_unavailable_date_is_empty(seed, now, tomorrow) -> None:
    seed.counselor(unavailable_dates=[tomorrow.isoformat()])
    assert get_available_slots("co-1", tomorrow, now=now) == []


def test_available_slots_daily_limit(seed, now, tomorrow) -> None:
    seed.counselor(max_daily_meetings=1)
    seed.client()
    seed.meeting(status=MeetingStatus.confirmed, meeting_date=tomorrow, meeting_time="10:00")
    assert get_available_slots("co-1", tomorrow, now=now) == []


def test_available_slots_respect_consecutive_limit(seed, now, tomorrow) -> None:
    seed.counselor(max_consecutive_meetings=2)
    seed.client()
    seed.client("cl-2")
    seed.meeting(status=MeetingStatus.confirmed, meeting_date=tomorrow, meeting_time="10:00")
    seed.meeting(
        "m-2",
        client_id="cl-2",
        status=MeetingStatus.confirmed,
        meeting_date=tomorrow,
        meeting_time="11:00",
    )

    slots = get_available_slots("co-1", tomorrow, now=now)

    # 09:00 и 12:00 дали бы три встречи подряд
    assert slots == ["13:00", "14:00", "15:00", "16:00"]


def test_consecutive_run_counts_both_sides() -> None:
    grid = ["09:00", "10:00", "11:00", "12:00"]
    assert consecutive_run(grid, ["09:00", "11:00"], "10:00") == 3
    assert consecutive_run(grid, ["09:00"], "11:00") == 1
    assert consecutive_run(grid, [], "09:30") == 1


def test_available_slots_invalid_hours_fall_back_to_defaults(seed, now, tomorrow) -> None:
    seed.counselor(work_start="18:00", work_end="09:00")
    slots = get_available_slots("co-1", tomorrow, now=now)
    assert slots[0] == "09:00"
    assert slots[-1] == "16:00"


def test_available_slots_unknown_or_inactive_counselor(seed, now, tomorrow) -> None:
    seed.counselor("co-off", is_active=False)
    with pytest.raises(NotFoundError):
        get_available_slots("co-missing", tomorrow, now=now)
    with pytest.raises(NotFoundError):
        get_available_slots("co-off", tomorrow, now=now)


def test_available_slots_malformed_date(seed, now) -> None:
    seed.counselor()
    with pytest.raises(ValidationError):
        get_available_slots("co-1", "03/03/2026", now=now)


def test_slot_interval_comes_from_settings(seed, now, tomorrow) -> None:
    seed.counselor(work_start="09:00", work_end="11:00")
    s = slot_service.get_settings()
    snapshot = s.booking_slot_interval_min
    try:
        s.booking_slot_interval_min = 30
        assert get_available_slots("co-1", tomorrow, now=now) == [
            "09:00",
            "09:30",
            "10:00",
            "10:30",
        ]
    finally:
        s.booking_slot_interval_min = snapshot
