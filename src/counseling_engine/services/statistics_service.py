"""
Сервисный слой: история сессий, счётчики и рейтинг консультанта.

Назначение:
- применение итога встречи к истории клиента и счётчикам консультанта
  (в той же транзакции, что и переход статуса)
- приём оценки сессии (ровно один раз на встречу)
- статистика и отзывы консультанта

Идемпотентность: запись истории уникальна по meeting_id; счётчики
меняются только если запись истории действительно вставлена.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from counseling_engine.common.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from counseling_engine.common.logging import get_project_logger
from counseling_engine.common.time import utc_now
from counseling_engine.domain.enums import MeetingStatus
from counseling_engine.realtime.publisher import get_publisher
from counseling_engine.storage.db import db_session
from counseling_engine.storage.models import Meeting
from counseling_engine.storage.repositories import (
    ClientRepository,
    CounselorClientRepository,
    CounselorRepository,
    MeetingRepository,
    SessionHistoryRepository,
)

log = get_project_logger()

RATING_MIN = 1
RATING_MAX = 5
FEEDBACK_MAX_LEN = 1000
RECENT_SESSIONS_LIMIT = 5

# Итоги, для которых пишется запись истории
_HISTORY_OUTCOMES = frozenset(
    {
        MeetingStatus.completed,
        MeetingStatus.client_only,
        MeetingStatus.counselor_only,
        MeetingStatus.abandoned,
        MeetingStatus.cancelled,
    }
)


# =============================================================================
# ИТОГ ВСТРЕЧИ → ИСТОРИЯ / СЧЁТЧИКИ
# =============================================================================
def apply_outcome(
    session: Session, meeting: Meeting, outcome: MeetingStatus, *, now: datetime
) -> bool:
    """
    Записать историю и обновить счётчики по итогу встречи.

    Возвращает True, если запись истории создана в этом вызове.
    Повторный вызов для той же встречи ничего не меняет.
    """
    if outcome not in _HISTORY_OUTCOMES or not meeting.counselor_id:
        return False

    created = SessionHistoryRepository(session).add_if_absent(
        {
            "meeting_id": meeting.id,
            "client_id": meeting.client_id,
            "counselor_id": meeting.counselor_id,
            "session_date": meeting.meeting_date,
            "session_type": meeting.meeting_type,
            "status": outcome,
            "created_at": now,
        }
    )
    if not created:
        log.info(
            "session_history_exists",
            extra={"payload": {"meeting_id": meeting.id, "outcome": outcome.value}},
        )
        return False

    counselors = CounselorRepository(session)
    clients = ClientRepository(session)

    if outcome == MeetingStatus.completed:
        counselors.increment(meeting.counselor_id, total_sessions=1, completed_sessions=1)
        if CounselorClientRepository(session).link_if_absent(
            meeting.counselor_id, meeting.client_id, now=now
        ):
            counselors.increment(meeting.counselor_id, active_clients=1)
        clients.set_current_counselor(meeting.client_id, meeting.counselor_id, only_if_empty=True)
    elif outcome == MeetingStatus.client_only:
        clients.set_current_counselor(meeting.client_id, meeting.counselor_id, only_if_empty=True)
    elif outcome == MeetingStatus.counselor_only:
        counselors.increment(meeting.counselor_id, total_sessions=1)
    elif outcome == MeetingStatus.cancelled:
        counselors.increment(meeting.counselor_id, cancelled_sessions=1)

    log.info(
        "session_history_recorded",
        extra={
            "payload": {
                "meeting_id": meeting.id,
                "counselor_id": meeting.counselor_id,
                "outcome": outcome.value,
            }
        },
    )
    return True


# =============================================================================
# ОЦЕНКА СЕССИИ
# =============================================================================
@dataclass
class RatingResult:
    meeting_id: str
    counselor_id: str
    rating: int
    feedback: str | None
    average_rating: float
    total_ratings: int


def validate_rating(rating: Any) -> int:
    # bool является подклассом int, его не принимаем
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationError("Оценка должна быть целым числом", {"rating": str(rating)[:16]})
    if not RATING_MIN <= rating <= RATING_MAX:
        raise ValidationError(
            "Оценка вне диапазона", {"rating": rating, "min": RATING_MIN, "max": RATING_MAX}
        )
    return rating


def _normalize_feedback(feedback: str | None) -> str | None:
    if feedback is None:
        return None
    text = str(feedback).strip()
    if len(text) > FEEDBACK_MAX_LEN:
        raise ValidationError("Отзыв слишком длинный", {"max_len": FEEDBACK_MAX_LEN})
    return text or None


def submit_rating(
    *,
    client_id: str,
    meeting_id: str,
    rating: Any,
    feedback: str | None = None,
    now: datetime | None = None,
) -> RatingResult:
    value = validate_rating(rating)
    text = _normalize_feedback(feedback)
    now = now or utc_now()

    with db_session() as s:
        meeting = MeetingRepository(s).get(meeting_id)
        if meeting is None:
            raise NotFoundError("Встреча не найдена", {"meeting_id": meeting_id})
        if meeting.client_id != client_id:
            raise ForbiddenError("Оценить может только клиент встречи")
        if meeting.status != MeetingStatus.completed:
            raise InvalidStateError(
                "Оценить можно только завершённую встречу",
                {"meeting_id": meeting_id, "status": meeting.status.value},
            )

        history = SessionHistoryRepository(s)
        if history.get_by_meeting(meeting_id) is None:
            raise NotFoundError("Запись истории не найдена", {"meeting_id": meeting_id})
        if not history.rate_once(meeting_id, rating=value, feedback=text, now=now):
            raise ConflictError("Сессия уже оценена", {"meeting_id": meeting_id})

        counselors = CounselorRepository(s)
        counselors.apply_rating(meeting.counselor_id, value)
        counselor = counselors.get(meeting.counselor_id, fresh=True)
        result = RatingResult(
            meeting_id=meeting_id,
            counselor_id=meeting.counselor_id,
            rating=value,
            feedback=text,
            average_rating=float(counselor.average_rating),
            total_ratings=int(counselor.total_ratings),
        )

    log.info(
        "session_rated",
        extra={"payload": {"meeting_id": meeting_id, "counselor_id": result.counselor_id}},
    )
    get_publisher().to_user(
        result.counselor_id, "session_rated", {"meeting_id": meeting_id, "rating": value}
    )
    return result


@dataclass
class RatingStatus:
    is_rated: bool
    rating: int | None = None
    feedback: str | None = None


def get_rating_status(*, meeting_id: str, client_id: str) -> RatingStatus:
    with db_session() as s:
        meeting = MeetingRepository(s).get(meeting_id)
        if meeting is None:
            raise NotFoundError("Встреча не найдена", {"meeting_id": meeting_id})
        if meeting.client_id != client_id:
            raise ForbiddenError()
        entry = SessionHistoryRepository(s).get_by_meeting(meeting_id)
        if entry is None or entry.rating is None:
            return RatingStatus(is_rated=False)
        return RatingStatus(is_rated=True, rating=entry.rating, feedback=entry.feedback)


# =============================================================================
# СТАТИСТИКА КОНСУЛЬТАНТА
# =============================================================================
@dataclass
class RecentSession:
    meeting_id: str
    meeting_date: date | None
    meeting_time: str | None
    meeting_type: str


@dataclass
class CounselorStatistics:
    counselor_id: str
    total_sessions: int
    completed_sessions: int
    cancelled_sessions: int
    active_clients: int
    total_ratings: int
    average_rating: float
    recent_sessions: list[RecentSession] = field(default_factory=list)


def get_counselor_statistics(counselor_id: str) -> CounselorStatistics:
    with db_session() as s:
        counselor = CounselorRepository(s).get(counselor_id)
        if counselor is None:
            raise NotFoundError("Консультант не найден", {"counselor_id": counselor_id})
        recent = MeetingRepository(s).list_terminal(
            counselor_id=counselor_id,
            statuses=(MeetingStatus.completed,),
            limit=RECENT_SESSIONS_LIMIT,
        )
        return CounselorStatistics(
            counselor_id=counselor.id,
            total_sessions=counselor.total_sessions,
            completed_sessions=counselor.completed_sessions,
            cancelled_sessions=counselor.cancelled_sessions,
            active_clients=counselor.active_clients,
            total_ratings=counselor.total_ratings,
            average_rating=round(float(counselor.average_rating), 2),
            recent_sessions=[
                RecentSession(
                    meeting_id=m.id,
                    meeting_date=m.meeting_date,
                    meeting_time=m.meeting_time,
                    meeting_type=m.meeting_type.value,
                )
                for m in recent
            ],
        )


def get_counselor_feedback(counselor_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
    """
    Оценки и отзывы без идентификации клиента.
    """
    with db_session() as s:
        if CounselorRepository(s).get(counselor_id) is None:
            raise NotFoundError("Консультант не найден", {"counselor_id": counselor_id})
        entries = SessionHistoryRepository(s).list_rated_for_counselor(counselor_id, limit=limit)
        return [
            {
                "meeting_id": e.meeting_id,
                "session_date": e.session_date,
                "session_type": e.session_type.value,
                "rating": e.rating,
                "feedback": e.feedback,
                "rated_at": e.rated_at,
            }
            for e in entries
        ]
