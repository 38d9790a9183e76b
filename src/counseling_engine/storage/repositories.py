"""
Репозитории (DAO слой).

Правила:
- Никакой бизнес-логики
- Только CRUD и запросы
- Все изменения статуса через условный UPDATE по (id, ожидаемый статус);
  rowcount == 0 означает, что переход проиграл гонку
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from sqlalchemy import desc, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from counseling_engine.domain.enums import (
    EXPIRABLE_STATUSES,
    SLOT_HOLDING_STATUSES,
    TERMINAL_STATUSES,
    MeetingStatus,
)

from .models import Client, Counselor, CounselorClient, Meeting, SessionHistoryEntry


def _insert_ignore(session: Session, table, values: dict[str, Any], keys: list[str]) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING. True, если строка вставлена.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing(
            index_elements=keys
        )
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing(index_elements=keys)
    else:
        raise RuntimeError(f"unsupported dialect: {dialect}")
    return bool(session.execute(stmt).rowcount)


# =============================================================================
# MEETING REPOSITORY
# =============================================================================
class MeetingRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, meeting_id: str, *, fresh: bool = False) -> Meeting | None:
        if fresh:
            return self.session.get(Meeting, meeting_id, populate_existing=True)
        return self.session.get(Meeting, meeting_id)

    def save(self, meeting: Meeting) -> None:
        self.session.add(meeting)

    def transition(
        self,
        meeting_id: str,
        *,
        expected: Iterable[MeetingStatus],
        values: dict[str, Any],
        where: Iterable[Any] = (),
    ) -> bool:
        """
        Условный UPDATE: применяется только если статус всё ещё один из expected.
        """
        stmt = (
            update(Meeting)
            .where(Meeting.id == meeting_id, Meeting.status.in_(list(expected)), *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return bool(self.session.execute(stmt).rowcount)

    def booked_times(self, counselor_id: str, day: date) -> list[str]:
        rows = self.session.execute(
            select(Meeting.meeting_time).where(
                Meeting.counselor_id == counselor_id,
                Meeting.meeting_date == day,
                Meeting.status.in_(list(SLOT_HOLDING_STATUSES)),
            )
        ).scalars()
        return [r for r in rows if r]

    def expire_slot_holders(
        self, counselor_id: str, day: date, meeting_time: str, *, now: datetime
    ) -> int:
        """
        Освободить слот от time_selected-встреч с истёкшим auto_expire_at.
        """
        stmt = (
            update(Meeting)
            .where(
                Meeting.counselor_id == counselor_id,
                Meeting.meeting_date == day,
                Meeting.meeting_time == meeting_time,
                Meeting.status == MeetingStatus.time_selected,
                Meeting.auto_expire_at.is_not(None),
                Meeting.auto_expire_at < now,
            )
            .values(status=MeetingStatus.cancelled, cancellation_reason="auto_expired")
            .execution_options(synchronize_session=False)
        )
        return int(self.session.execute(stmt).rowcount or 0)

    def active_for_client(self, client_id: str) -> Meeting | None:
        return (
            self.session.execute(
                select(Meeting)
                .where(
                    Meeting.client_id == client_id,
                    Meeting.status.not_in(list(TERMINAL_STATUSES)),
                )
                .order_by(desc(Meeting.created_at))
                .limit(1)
            )
            .scalars()
            .first()
        )

    def confirmed_for_counselor(self, counselor_id: str) -> Meeting | None:
        return (
            self.session.execute(
                select(Meeting)
                .where(
                    Meeting.counselor_id == counselor_id,
                    Meeting.status == MeetingStatus.confirmed,
                )
                .order_by(Meeting.meeting_date, Meeting.meeting_time)
                .limit(1)
            )
            .scalars()
            .first()
        )

    def list_grace_expired(self, *, now: datetime, limit: int) -> list[Meeting]:
        return list(
            self.session.execute(
                select(Meeting)
                .where(
                    Meeting.status == MeetingStatus.confirmed,
                    Meeting.grace_active.is_(True),
                    Meeting.grace_end_time.is_not(None),
                    Meeting.grace_end_time < now,
                )
                .order_by(Meeting.grace_end_time)
                .limit(max(1, limit))
            ).scalars()
        )

    def list_confirmed_without_grace(self, *, limit: int) -> list[Meeting]:
        return list(
            self.session.execute(
                select(Meeting)
                .where(
                    Meeting.status == MeetingStatus.confirmed,
                    Meeting.grace_active.is_(False),
                )
                .order_by(Meeting.meeting_date, Meeting.meeting_time)
                .limit(max(1, limit))
            ).scalars()
        )

    def list_reminder_candidates(self, *, until_day: date, limit: int) -> list[Meeting]:
        """Подтверждённые встречи без отправленного напоминания, не позже until_day."""
        return list(
            self.session.execute(
                select(Meeting)
                .where(
                    Meeting.status == MeetingStatus.confirmed,
                    Meeting.grace_active.is_(False),
                    Meeting.reminder_sent_at.is_(None),
                    Meeting.meeting_date <= until_day,
                )
                .order_by(Meeting.meeting_date, Meeting.meeting_time)
                .limit(max(1, limit))
            ).scalars()
        )

    def list_expired_requests(self, *, now: datetime, limit: int) -> list[Meeting]:
        return list(
            self.session.execute(
                select(Meeting)
                .where(
                    Meeting.status.in_(list(EXPIRABLE_STATUSES)),
                    Meeting.auto_expire_at.is_not(None),
                    Meeting.auto_expire_at < now,
                )
                .limit(max(1, limit))
            ).scalars()
        )

    def list_terminal(
        self,
        *,
        client_id: str | None = None,
        counselor_id: str | None = None,
        statuses: Iterable[MeetingStatus] = TERMINAL_STATUSES,
        limit: int = 100,
    ) -> list[Meeting]:
        query = select(Meeting).where(Meeting.status.in_(list(statuses)))
        if client_id:
            query = query.where(Meeting.client_id == client_id)
        if counselor_id:
            query = query.where(Meeting.counselor_id == counselor_id)
        return list(
            self.session.execute(
                query.order_by(desc(Meeting.meeting_date), desc(Meeting.meeting_time)).limit(
                    max(1, min(limit, 500))
                )
            ).scalars()
        )


# =============================================================================
# COUNSELOR / CLIENT REPOSITORIES
# =============================================================================
class CounselorRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, counselor_id: str, *, fresh: bool = False) -> Counselor | None:
        if fresh:
            return self.session.get(Counselor, counselor_id, populate_existing=True)
        return self.session.get(Counselor, counselor_id)

    def get_for_update(self, counselor_id: str) -> Counselor | None:
        """
        Строка консультанта под SELECT ... FOR UPDATE: выборы времени у одного
        консультанта сериализуются, дневной лимит и лимит подряд не обходятся
        параллельными запросами. В SQLite блокировку даёт BEGIN IMMEDIATE.
        """
        return (
            self.session.execute(
                select(Counselor)
                .where(Counselor.id == counselor_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def save(self, counselor: Counselor) -> None:
        self.session.add(counselor)

    def increment(self, counselor_id: str, **deltas: int) -> None:
        """
        col = col + delta на стороне БД (без потерянных обновлений).
        """
        values = {
            name: getattr(Counselor, name) + int(delta) for name, delta in deltas.items() if delta
        }
        if not values:
            return
        self.session.execute(
            update(Counselor)
            .where(Counselor.id == counselor_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def apply_rating(self, counselor_id: str, rating: int) -> None:
        """
        avg' = (avg * n + rating) / (n + 1); n' = n + 1, одним UPDATE.
        """
        self.session.execute(
            update(Counselor)
            .where(Counselor.id == counselor_id)
            .values(
                average_rating=(
                    (Counselor.average_rating * Counselor.total_ratings + rating)
                    / (Counselor.total_ratings + 1.0)
                ),
                total_ratings=Counselor.total_ratings + 1,
            )
            .execution_options(synchronize_session=False)
        )


class ClientRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, client_id: str) -> Client | None:
        return self.session.get(Client, client_id)

    def save(self, client: Client) -> None:
        self.session.add(client)

    def set_current_counselor(self, client_id: str, counselor_id: str, *, only_if_empty: bool):
        stmt = update(Client).where(Client.id == client_id)
        if only_if_empty:
            stmt = stmt.where(Client.current_counselor_id.is_(None))
        self.session.execute(
            stmt.values(current_counselor_id=counselor_id).execution_options(
                synchronize_session=False
            )
        )


class CounselorClientRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def link_if_absent(self, counselor_id: str, client_id: str, *, now: datetime) -> bool:
        return _insert_ignore(
            self.session,
            CounselorClient.__table__,
            {"counselor_id": counselor_id, "client_id": client_id, "first_session_at": now},
            ["counselor_id", "client_id"],
        )


# =============================================================================
# SESSION HISTORY REPOSITORY
# =============================================================================
class SessionHistoryRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add_if_absent(self, values: dict[str, Any]) -> bool:
        """
        Идемпотентная запись истории по meeting_id.
        """
        return _insert_ignore(self.session, SessionHistoryEntry.__table__, values, ["meeting_id"])

    def get_by_meeting(self, meeting_id: str) -> SessionHistoryEntry | None:
        return (
            self.session.execute(
                select(SessionHistoryEntry).where(SessionHistoryEntry.meeting_id == meeting_id)
            )
            .scalars()
            .first()
        )

    def rate_once(
        self, meeting_id: str, *, rating: int, feedback: str | None, now: datetime
    ) -> bool:
        stmt = (
            update(SessionHistoryEntry)
            .where(
                SessionHistoryEntry.meeting_id == meeting_id,
                SessionHistoryEntry.rating.is_(None),
            )
            .values(rating=rating, feedback=feedback, rated_at=now)
            .execution_options(synchronize_session=False)
        )
        return bool(self.session.execute(stmt).rowcount)

    def list_rated_for_counselor(self, counselor_id: str, *, limit: int = 100):
        return list(
            self.session.execute(
                select(SessionHistoryEntry)
                .where(
                    SessionHistoryEntry.counselor_id == counselor_id,
                    SessionHistoryEntry.rating.is_not(None),
                )
                .order_by(desc(SessionHistoryEntry.rated_at))
                .limit(max(1, min(limit, 500)))
            ).scalars()
        )
