"""
Сервисный слой: история сессий клиента и консультанта.

Назначение:
- завершённые (терминальные) встречи с анонимным представлением собеседника
- оценка и отзыв подтягиваются из session_history

Собеседник передаётся как Reference: Resolved, если запись есть в БД,
иначе Unresolved (удалённый/неизвестный пользователь).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from counseling_engine.common.errors import ForbiddenError
from counseling_engine.common.security import AuthContext
from counseling_engine.domain.enums import Role
from counseling_engine.domain.references import Reference, Resolved, Unresolved, resolve
from counseling_engine.storage.db import db_session
from counseling_engine.storage.models import Client, Counselor, Meeting, SessionHistoryEntry
from counseling_engine.storage.repositories import (
    ClientRepository,
    CounselorRepository,
    MeetingRepository,
    SessionHistoryRepository,
)

ANONYMOUS_CLIENT = "Anonymous Client"
ANONYMOUS_COUNSELOR = "Anonymous Counselor"
UNKNOWN_PARTY = "Unknown"


@dataclass
class HistoryItem:
    meeting_id: str
    status: str
    meeting_type: str
    meeting_date: date | None
    meeting_time: str | None
    counterpart_id: str | None
    counterpart_label: str
    rating: int | None = None
    feedback: str | None = None


def _label(ref: Reference | None, anonymous: str) -> tuple[str | None, str]:
    if ref is None:
        return None, UNKNOWN_PARTY
    if isinstance(ref, Resolved):
        return ref.value.id, anonymous
    if isinstance(ref, Unresolved):
        return ref.id, UNKNOWN_PARTY
    raise TypeError(f"unexpected reference: {ref!r}")


def _item(
    meeting: Meeting, ref: Reference | None, anonymous: str, entry: SessionHistoryEntry | None
) -> HistoryItem:
    counterpart_id, label = _label(ref, anonymous)
    return HistoryItem(
        meeting_id=meeting.id,
        status=meeting.status.value,
        meeting_type=meeting.meeting_type.value,
        meeting_date=meeting.meeting_date,
        meeting_time=meeting.meeting_time,
        counterpart_id=counterpart_id,
        counterpart_label=label,
        rating=entry.rating if entry else None,
        feedback=entry.feedback if entry else None,
    )


def get_client_session_history(ctx: AuthContext, client_id: str, *, limit: int = 100):
    if ctx.role != Role.admin and not (ctx.role == Role.client and ctx.user_id == client_id):
        raise ForbiddenError("Нет доступа к истории клиента")

    with db_session() as s:
        meetings = MeetingRepository(s).list_terminal(client_id=client_id, limit=limit)
        counselors = CounselorRepository(s)
        history = SessionHistoryRepository(s)
        out: list[HistoryItem] = []
        for m in meetings:
            ref: Reference[Counselor] | None = None
            if m.counselor_id:
                ref = resolve(m.counselor_id, counselors.get(m.counselor_id))
            out.append(_item(m, ref, ANONYMOUS_COUNSELOR, history.get_by_meeting(m.id)))
        return out


def get_counselor_session_history(ctx: AuthContext, counselor_id: str, *, limit: int = 100):
    if ctx.role != Role.admin and not (
        ctx.role == Role.counselor and ctx.user_id == counselor_id
    ):
        raise ForbiddenError("Нет доступа к истории консультанта")

    with db_session() as s:
        meetings = MeetingRepository(s).list_terminal(counselor_id=counselor_id, limit=limit)
        clients = ClientRepository(s)
        history = SessionHistoryRepository(s)
        out: list[HistoryItem] = []
        for m in meetings:
            ref: Reference[Client] = resolve(m.client_id, clients.get(m.client_id))
            out.append(_item(m, ref, ANONYMOUS_CLIENT, history.get_by_meeting(m.id)))
        return out
