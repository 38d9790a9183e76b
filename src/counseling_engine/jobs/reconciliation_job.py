"""
Reconciliation job.

Назначение:
- истечение запросов без ответа (auto_expire_at)
- финализация встреч, у которых закончилось grace-окно
- финализация просроченных встреч без grace-окна
- напоминание обеим сторонам за REMINDER_LEAD_MIN до начала (один раз)

Каждая встреча обрабатывается в своей транзакции: ошибка по одной встрече
логируется и не прерывает проход. Переход, проигравший гонку (статус
уже изменён), молча пропускается, поэтому повторный запуск безопасен.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from counseling_engine.common.config import get_settings
from counseling_engine.common.logging import get_project_logger
from counseling_engine.common.metrics import record_reconcile_result
from counseling_engine.common.time import utc_now
from counseling_engine.domain.enums import EXPIRABLE_STATUSES, MeetingStatus
from counseling_engine.domain.state_machine import grace_outcome, overdue_outcome
from counseling_engine.realtime.publisher import get_publisher
from counseling_engine.services import video_service
from counseling_engine.services.booking_service import (
    apply_transition,
    expire_meeting,
    scheduled_at,
)
from counseling_engine.services.notification_service import dispatch_notification
from counseling_engine.services.statistics_service import apply_outcome
from counseling_engine.storage.db import db_session
from counseling_engine.storage.models import Meeting
from counseling_engine.storage.repositories import (
    ClientRepository,
    CounselorRepository,
    MeetingRepository,
)

log = get_project_logger()

SOURCE = "reconciler"


@dataclass
class ReconcileResult:
    expired: int = 0
    grace_resolved: int = 0
    overdue_resolved: int = 0
    skipped: int = 0
    reminded: int = 0


class MeetingReconciler:
    def __init__(self, *, clock: Callable[[], datetime] = utc_now, limit: int | None = None):
        self.clock = clock
        self.limit = int(limit if limit is not None else get_settings().reconciliation_limit)

    # -------------------------------------------------------------------------
    # Проходы
    # -------------------------------------------------------------------------
    def tick(self) -> ReconcileResult:
        now = self.clock()
        result = ReconcileResult()
        self._expire_pass(now, result)
        self._reminder_pass(now, result)
        self._grace_pass(now, result)
        self._overdue_pass(now, result)
        return result

    def _expire_pass(self, now: datetime, result: ReconcileResult) -> None:
        with db_session() as s:
            ids = [m.id for m in MeetingRepository(s).list_expired_requests(now=now, limit=self.limit)]

        for meeting_id in ids:
            try:
                with db_session() as s:
                    meeting = MeetingRepository(s).get(meeting_id, fresh=True)
                    if meeting is None or meeting.status not in EXPIRABLE_STATUSES:
                        continue
                    updated = expire_meeting(s, meeting, source=SOURCE)
                if updated is None:
                    continue
                result.expired += 1
                get_publisher().to_user(
                    updated.client_id, "booking_expired", {"meeting_id": meeting_id}
                )
            except Exception as e:
                self._skip(result, meeting_id, "expire", e)

    def _reminder_pass(self, now: datetime, result: ReconcileResult) -> None:
        lead = timedelta(minutes=max(1, int(get_settings().reminder_lead_min)))
        # +1 день: дата встречи хранится в поясе консультанта
        until_day = (now + lead).date() + timedelta(days=1)
        with db_session() as s:
            ids = [
                m.id
                for m in MeetingRepository(s).list_reminder_candidates(
                    until_day=until_day, limit=self.limit
                )
            ]

        for meeting_id in ids:
            try:
                with db_session() as s:
                    repo = MeetingRepository(s)
                    meeting = repo.get(meeting_id, fresh=True)
                    if meeting is None or meeting.status != MeetingStatus.confirmed:
                        continue
                    counselor = CounselorRepository(s).get(meeting.counselor_id)
                    start = scheduled_at(meeting, counselor)
                    if not (now < start <= now + lead):
                        continue
                    claimed = repo.transition(
                        meeting_id,
                        expected=(MeetingStatus.confirmed,),
                        values={"reminder_sent_at": now},
                        where=[Meeting.reminder_sent_at.is_(None)],
                    )
                    if not claimed:
                        continue
                    client = ClientRepository(s).get(meeting.client_id)
                    recipients = [
                        client.email if client is not None else None,
                        counselor.email if counselor is not None else None,
                    ]
                    data = {
                        "meeting_id": meeting.id,
                        "meeting_type": meeting.meeting_type.value,
                        "meeting_date": meeting.meeting_date.isoformat(),
                        "meeting_time": meeting.meeting_time,
                        "minutes_left": int((start - now).total_seconds() // 60),
                    }
                result.reminded += 1
                for recipient in recipients:
                    dispatch_notification(recipient, "session_reminder", data)
            except Exception as e:
                self._skip(result, meeting_id, "reminder", e)

    def _grace_pass(self, now: datetime, result: ReconcileResult) -> None:
        with db_session() as s:
            ids = [m.id for m in MeetingRepository(s).list_grace_expired(now=now, limit=self.limit)]

        for meeting_id in ids:
            try:
                with db_session() as s:
                    meeting = MeetingRepository(s).get(meeting_id, fresh=True)
                    if meeting is None or meeting.status != MeetingStatus.confirmed:
                        continue
                    outcome = grace_outcome(
                        client_joined=bool(meeting.client_joined),
                        counselor_joined=bool(meeting.counselor_joined),
                    )
                    updated = apply_transition(
                        s, meeting, outcome, {"grace_active": False}, source=SOURCE
                    )
                    if updated is not None:
                        apply_outcome(s, updated, outcome, now=now)
                if updated is None:
                    continue
                result.grace_resolved += 1
                self._finalized(updated, outcome)
            except Exception as e:
                self._skip(result, meeting_id, "grace", e)

    def _overdue_pass(self, now: datetime, result: ReconcileResult) -> None:
        overdue_after = timedelta(minutes=get_settings().overdue_after_min)
        with db_session() as s:
            ids = [m.id for m in MeetingRepository(s).list_confirmed_without_grace(limit=self.limit)]

        for meeting_id in ids:
            try:
                with db_session() as s:
                    meeting = MeetingRepository(s).get(meeting_id, fresh=True)
                    if (
                        meeting is None
                        or meeting.status != MeetingStatus.confirmed
                        or meeting.grace_active
                    ):
                        continue
                    counselor = CounselorRepository(s).get(meeting.counselor_id)
                    if scheduled_at(meeting, counselor) + overdue_after >= now:
                        continue
                    outcome = overdue_outcome(
                        client_joined=bool(meeting.client_joined),
                        counselor_joined=bool(meeting.counselor_joined),
                    )
                    updated = apply_transition(s, meeting, outcome, source=SOURCE)
                    if updated is not None:
                        apply_outcome(s, updated, outcome, now=now)
                if updated is None:
                    continue
                result.overdue_resolved += 1
                self._finalized(updated, outcome)
            except Exception as e:
                self._skip(result, meeting_id, "overdue", e)

    # -------------------------------------------------------------------------
    # Хелперы
    # -------------------------------------------------------------------------
    @staticmethod
    def _finalized(meeting, outcome: MeetingStatus) -> None:
        payload = {"meeting_id": meeting.id, "status": outcome.value}
        publisher = get_publisher()
        publisher.to_user(meeting.client_id, "meeting_finalized", payload)
        publisher.to_user(meeting.counselor_id, "meeting_finalized", payload)
        publisher.to_admin("booking_updated", payload)
        video_service.delete_room(meeting.daily_room_name)

    @staticmethod
    def _skip(result: ReconcileResult, meeting_id: str, stage: str, err: Exception) -> None:
        result.skipped += 1
        log.warning(
            "reconcile_meeting_skipped",
            extra={"payload": {"meeting_id": meeting_id, "stage": stage, "err": str(err)[:300]}},
        )


def run(*, limit: int | None = None, source: str = "job") -> ReconcileResult | None:
    settings = get_settings()
    if not settings.reconciliation_enabled:
        log.info("reconciliation_job_skipped", extra={"payload": {"reason": "disabled"}})
        return None

    reconcile_limit = max(1, int(limit if limit is not None else settings.reconciliation_limit))
    log.info("reconciliation_job_started", extra={"payload": {"limit": reconcile_limit}})

    result = MeetingReconciler(limit=reconcile_limit).tick()
    record_reconcile_result(
        source=source,
        expired=result.expired,
        grace_resolved=result.grace_resolved,
        overdue_resolved=result.overdue_resolved,
        skipped=result.skipped,
        reminded=result.reminded,
    )
    log.info(
        "reconciliation_job_finished",
        extra={
            "payload": {
                "expired": result.expired,
                "grace_resolved": result.grace_resolved,
                "overdue_resolved": result.overdue_resolved,
                "skipped": result.skipped,
                "reminded": result.reminded,
            }
        },
    )
    return result
