from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import IntegrityError

from counseling_engine.common.errors import ConflictError
from counseling_engine.domain.enums import MeetingStatus
from counseling_engine.services import booking_service
from counseling_engine.storage.db import db_session
from counseling_engine.storage.repositories import MeetingRepository

N = 8


def test_concurrent_select_time_allows_single_winner(seed, principals, now, tomorrow) -> None:
    seed.counselor()
    for i in range(N):
        seed.client(f"cl-{i}")
        seed.meeting(f"m-{i}", client_id=f"cl-{i}")

    def _select(i: int) -> str:
        try:
            booking_service.select_time(
                principals.client(f"cl-{i}"),
                meeting_id=f"m-{i}",
                meeting_date=tomorrow.isoformat(),
                meeting_time="10:00",
                now=now,
            )
            return "ok"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=N) as pool:
        outcomes = list(pool.map(_select, range(N)))

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == N - 1

    with db_session() as s:
        assert MeetingRepository(s).booked_times("co-1", tomorrow) == ["10:00"]
    held = [seed.get(f"m-{i}").status for i in range(N)]
    assert held.count(MeetingStatus.time_selected) == 1
    assert held.count(MeetingStatus.counselor_assigned) == N - 1


def test_live_slot_index_rejects_second_holder(seed, tomorrow) -> None:
    seed.counselor()
    seed.client()
    seed.client("cl-2")
    seed.meeting(status=MeetingStatus.confirmed, meeting_date=tomorrow, meeting_time="10:00")
    seed.meeting("m-2", client_id="cl-2")

    with pytest.raises(IntegrityError), db_session() as s:
        MeetingRepository(s).transition(
            "m-2",
            expected=(MeetingStatus.counselor_assigned,),
            values={
                "status": MeetingStatus.time_selected,
                "meeting_date": tomorrow,
                "meeting_time": "10:00",
            },
        )

    assert seed.get("m-2").status == MeetingStatus.counselor_assigned


def test_concurrent_select_time_respects_daily_limit(seed, principals, now, tomorrow) -> None:
    seed.counselor(max_daily_meetings=1)
    times = ["09:00", "10:00", "11:00", "12:00", "13:00", "14:00"]
    for i in range(len(times)):
        seed.client(f"cl-{i}")
        seed.meeting(f"m-{i}", client_id=f"cl-{i}")

    def _select(i: int) -> str:
        try:
            booking_service.select_time(
                principals.client(f"cl-{i}"),
                meeting_id=f"m-{i}",
                meeting_date=tomorrow.isoformat(),
                meeting_time=times[i],
                now=now,
            )
            return "ok"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=len(times)) as pool:
        outcomes = list(pool.map(_select, range(len(times))))

    assert outcomes.count("ok") == 1
    with db_session() as s:
        assert len(MeetingRepository(s).booked_times("co-1", tomorrow)) == 1
