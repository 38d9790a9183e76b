from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select

from counseling_engine.common.config import get_settings
from counseling_engine.domain.enums import MeetingStatus
from counseling_engine.jobs import reconciliation_job
from counseling_engine.jobs.reconciliation_job import MeetingReconciler
from counseling_engine.storage.db import db_session
from counseling_engine.storage.models import SessionHistoryEntry


def _confirmed(seed, tomorrow, meeting_id: str = "m-1", **kw) -> str:
    values = {
        "status": MeetingStatus.confirmed,
        "meeting_date": tomorrow,
        "meeting_time": "10:00",
        "daily_room_name": f"meeting-{meeting_id}",
    }
    values.update(kw)
    return seed.meeting(meeting_id, **values)


def _in_grace(seed, tomorrow, meeting_id: str = "m-1", **kw) -> str:
    grace_end = datetime(tomorrow.year, tomorrow.month, tomorrow.day, 11, 0, tzinfo=UTC)
    return _confirmed(
        seed, tomorrow, meeting_id, grace_active=True, grace_end_time=grace_end, **kw
    )


def _history_count(meeting_id: str) -> int:
    with db_session() as s:
        return s.execute(
            select(func.count())
            .select_from(SessionHistoryEntry)
            .where(SessionHistoryEntry.meeting_id == meeting_id)
        ).scalar_one()


def _at(day, hh: int, mm: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hh, mm, tzinfo=UTC)


def test_reconciliation_job_skips_when_disabled() -> None:
    s = get_settings()
    snapshot_enabled = s.reconciliation_enabled
    try:
        s.reconciliation_enabled = False
        result = reconciliation_job.run(limit=10)
        assert result is None
    finally:
        s.reconciliation_enabled = snapshot_enabled


def test_reconciliation_job_runs_with_limit(monkeypatch) -> None:
    s = get_settings()
    snapshot_enabled = s.reconciliation_enabled
    snapshot_limit = s.reconciliation_limit
    limits: list[int] = []

    class _FakeReconciler:
        def __init__(self, *, limit: int) -> None:
            limits.append(limit)

        def tick(self):
            return reconciliation_job.ReconcileResult(expired=2)

    monkeypatch.setattr(reconciliation_job, "MeetingReconciler", _FakeReconciler)
    try:
        s.reconciliation_enabled = True
        s.reconciliation_limit = 123
        result = reconciliation_job.run()
        assert result is not None
        assert result.expired == 2
        assert limits == [123]
    finally:
        s.reconciliation_enabled = snapshot_enabled
        s.reconciliation_limit = snapshot_limit


def test_grace_without_joins_is_incomplete_without_history(seed, tomorrow, side_effects) -> None:
    seed.counselor()
    seed.client()
    _in_grace(seed, tomorrow)

    result = MeetingReconciler(clock=lambda: _at(tomorrow, 11, 1)).tick()

    assert result.grace_resolved == 1
    m = seed.get("m-1")
    assert m.status == MeetingStatus.incomplete
    assert m.grace_active is False
    assert _history_count("m-1") == 0
    c = seed.get_counselor()
    assert (c.total_sessions, c.completed_sessions, c.active_clients) == (0, 0, 0)
    assert "meeting_finalized" in side_effects.publisher.names("user:cl-1")
    assert "booking_updated" in side_effects.publisher.names("admin")


def test_grace_with_both_joined_completes_once(seed, tomorrow) -> None:
    seed.counselor()
    seed.client()
    _in_grace(seed, tomorrow, client_joined=True, counselor_joined=True)
    reconciler = MeetingReconciler(clock=lambda: _at(tomorrow, 11, 1))

    first = reconciler.tick()
    second = reconciler.tick()

    assert first.grace_resolved == 1
    assert second.grace_resolved == 0
    assert seed.get("m-1").status == MeetingStatus.completed
    assert _history_count("m-1") == 1
    c = seed.get_counselor()
    assert (c.total_sessions, c.completed_sessions, c.active_clients) == (1, 1, 1)
    assert seed.get_client().current_counselor_id == "co-1"


def test_grace_partial_presence_outcomes(seed, tomorrow) -> None:
    seed.counselor()
    seed.client()
    seed.client("cl-2")
    _in_grace(seed, tomorrow, "m-1", client_joined=True)
    _in_grace(seed, tomorrow, "m-2", client_id="cl-2", meeting_time="11:00", counselor_joined=True)

    MeetingReconciler(clock=lambda: _at(tomorrow, 11, 1)).tick()

    assert seed.get("m-1").status == MeetingStatus.client_only
    assert seed.get("m-2").status == MeetingStatus.counselor_only
    c = seed.get_counselor()
    # client_only не двигает счётчики консультанта, counselor_only считается сессией
    assert (c.total_sessions, c.completed_sessions) == (1, 0)
    assert seed.get_client().current_counselor_id == "co-1"
    assert seed.get_client("cl-2").current_counselor_id is None


def test_open_grace_window_is_not_resolved_early(seed, tomorrow) -> None:
    seed.counselor()
    seed.client()
    _in_grace(seed, tomorrow)

    result = MeetingReconciler(clock=lambda: _at(tomorrow, 10, 59)).tick()

    assert result.grace_resolved == 0
    assert seed.get("m-1").status == MeetingStatus.confirmed


def test_overdue_without_grace_is_abandoned(seed, tomorrow) -> None:
    seed.counselor()
    seed.client()
    _confirmed(seed, tomorrow, client_joined=True)

    # начало 10:00, OVERDUE_AFTER_MIN=60
    early = MeetingReconciler(clock=lambda: _at(tomorrow, 11, 0)).tick()
    assert early.overdue_resolved == 0

    result = MeetingReconciler(clock=lambda: _at(tomorrow, 11, 1)).tick()

    assert result.overdue_resolved == 1
    assert seed.get("m-1").status == MeetingStatus.abandoned
    assert _history_count("m-1") == 1
    c = seed.get_counselor()
    assert (c.total_sessions, c.completed_sessions) == (0, 0)


def test_overdue_with_both_joined_is_completed(seed, tomorrow) -> None:
    seed.counselor()
    seed.client()
    _confirmed(seed, tomorrow, client_joined=True, counselor_joined=True)

    MeetingReconciler(clock=lambda: _at(tomorrow, 12, 0)).tick()

    assert seed.get("m-1").status == MeetingStatus.completed
    assert seed.get_counselor().completed_sessions == 1


def test_expire_pass_cancels_stale_requests(seed, now, tomorrow, side_effects) -> None:
    seed.counselor()
    seed.client()
    seed.client("cl-2")
    seed.meeting(
        status=MeetingStatus.time_selected,
        meeting_date=tomorrow,
        meeting_time="10:00",
        auto_expire_at=now + timedelta(hours=1),
    )
    seed.meeting("m-2", client_id="cl-2", auto_expire_at=now + timedelta(hours=3))

    result = MeetingReconciler(clock=lambda: now + timedelta(hours=2)).tick()

    assert result.expired == 1
    m = seed.get("m-1")
    assert m.status == MeetingStatus.cancelled
    assert m.cancellation_reason == "auto_expired"
    assert _history_count("m-1") == 0
    assert seed.get_counselor().cancelled_sessions == 0
    assert seed.get("m-2").status == MeetingStatus.counselor_assigned
    assert "booking_expired" in side_effects.publisher.names("user:cl-1")


def test_malformed_meeting_is_skipped_and_pass_continues(seed, tomorrow) -> None:
    seed.counselor()
    seed.client()
    seed.client("cl-2")
    # confirmed без даты: время начала не вычислить
    _confirmed(seed, tomorrow, "m-bad", meeting_date=None, meeting_time=None)
    _confirmed(seed, tomorrow, "m-2", client_id="cl-2", meeting_time="11:00")

    result = MeetingReconciler(clock=lambda: _at(tomorrow, 13, 0)).tick()

    assert result.skipped == 1
    assert result.overdue_resolved == 1
    assert seed.get("m-bad").status == MeetingStatus.confirmed
    assert seed.get("m-2").status == MeetingStatus.abandoned


def test_finalized_meeting_room_is_deleted(seed, tomorrow, monkeypatch) -> None:
    seed.counselor()
    seed.client()
    _in_grace(seed, tomorrow)
    deleted: list[str | None] = []
    monkeypatch.setattr(
        reconciliation_job.video_service, "delete_room", lambda name: deleted.append(name)
    )

    MeetingReconciler(clock=lambda: _at(tomorrow, 11, 1)).tick()

    assert deleted == ["meeting-m-1"]


def _reminders(side_effects) -> list[tuple[str, dict]]:
    return [
        (recipient, data)
        for recipient, template, data in side_effects.notifier.sent
        if template == "session_reminder"
    ]


def test_reminder_sent_once_to_both_parties(seed, tomorrow, side_effects) -> None:
    seed.counselor()
    seed.client()
    _confirmed(seed, tomorrow)

    first = MeetingReconciler(clock=lambda: _at(tomorrow, 9, 30)).tick()
    second = MeetingReconciler(clock=lambda: _at(tomorrow, 9, 40)).tick()

    assert first.reminded == 1
    assert second.reminded == 0
    sent = _reminders(side_effects)
    assert sorted(r for r, _ in sent) == ["cl-1@counseling.local", "co-1@counseling.local"]
    assert sent[0][1]["minutes_left"] == 30
    assert seed.get("m-1").reminder_sent_at is not None
    assert seed.get("m-1").status == MeetingStatus.confirmed


def test_reminder_waits_until_lead_window(seed, tomorrow, side_effects) -> None:
    seed.counselor()
    seed.client()
    _confirmed(seed, tomorrow)

    result = MeetingReconciler(clock=lambda: _at(tomorrow, 8, 30)).tick()

    assert result.reminded == 0
    assert _reminders(side_effects) == []
    assert seed.get("m-1").reminder_sent_at is None


def test_reminder_not_sent_after_start(seed, tomorrow, side_effects) -> None:
    seed.counselor()
    seed.client()
    _confirmed(seed, tomorrow)

    result = MeetingReconciler(clock=lambda: _at(tomorrow, 10, 5)).tick()

    assert result.reminded == 0
    assert _reminders(side_effects) == []


def test_reminder_lead_is_configurable(seed, tomorrow, side_effects) -> None:
    s = get_settings()
    snapshot = s.reminder_lead_min
    seed.counselor()
    seed.client()
    _confirmed(seed, tomorrow)
    try:
        s.reminder_lead_min = 120
        result = MeetingReconciler(clock=lambda: _at(tomorrow, 8, 30)).tick()
    finally:
        s.reminder_lead_min = snapshot

    assert result.reminded == 1
    assert len(_reminders(side_effects)) == 2
