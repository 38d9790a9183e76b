"""
Сервисный слой: жизненный цикл встречи.

Назначение:
- операции машины состояний (создание, назначение, выбор времени,
  подтверждение, отмена, no-show, завершение)
- присутствие участников и grace-окно
- выдача токена входа в видеокомнату

Правила:
- любой переход это условный UPDATE по (id, текущий статус); проигравший
  гонку получает InvalidStateError, сущность не меняется
- слот держит частичный уникальный индекс; нарушение → ConflictError
- вызов видеопровайдера выполняется вне транзакции; при ошибке переход
  не применяется
- публикация событий и уведомления после коммита, best-effort
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from counseling_engine.common.config import get_settings
from counseling_engine.common.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from counseling_engine.common.ids import new_meeting_id
from counseling_engine.common.logging import get_project_logger
from counseling_engine.common.metrics import SLOT_CONFLICTS_TOTAL, record_transition
from counseling_engine.common.security import AuthContext
from counseling_engine.common.time import as_utc, meeting_start_utc, parse_hhmm, utc_now
from counseling_engine.domain.enums import EXPIRABLE_STATUSES, MeetingStatus, MeetingType, Role
from counseling_engine.domain.slots import generate_slots, is_unavailable, within_working_hours
from counseling_engine.domain.state_machine import transition
from counseling_engine.realtime.publisher import get_publisher
from counseling_engine.services import video_service
from counseling_engine.services.notification_service import dispatch_notification
from counseling_engine.services.slot_service import (
    consecutive_limit_exceeded,
    daily_limit_reached,
    parse_day,
    working_hours,
)
from counseling_engine.services.statistics_service import apply_outcome
from counseling_engine.storage.db import db_session
from counseling_engine.storage.models import Counselor, Meeting
from counseling_engine.storage.repositories import (
    ClientRepository,
    CounselorRepository,
    MeetingRepository,
)

log = get_project_logger()

ISSUE_DESCRIPTION_MAX_LEN = 2000
REASON_MAX_LEN = 500
AUTO_EXPIRED_REASON = "auto_expired"


# =============================================================================
# ПОБОЧНЫЕ ЭФФЕКТЫ ПОСЛЕ КОММИТА
# =============================================================================
@dataclass
class _SideEffects:
    # (user_id | None для admin, event, payload)
    events: list[tuple[str | None, str, dict[str, Any]]] = field(default_factory=list)
    # (recipient, template, data)
    mails: list[tuple[str | None, str, dict[str, Any]]] = field(default_factory=list)

    def publish(self, user_id: str | None, event: str, payload: dict[str, Any]) -> None:
        if user_id:
            self.events.append((user_id, event, payload))

    def admin(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((None, event, payload))

    def mail(self, recipient: str | None, template: str, data: dict[str, Any]) -> None:
        self.mails.append((recipient, template, data))

    def run(self) -> None:
        publisher = get_publisher()
        for user_id, event, payload in self.events:
            if user_id is None:
                publisher.to_admin(event, payload)
            else:
                publisher.to_user(user_id, event, payload)
        for recipient, template, data in self.mails:
            dispatch_notification(recipient, template, data)


def _meeting_payload(m: Meeting) -> dict[str, Any]:
    return {
        "meeting_id": m.id,
        "status": m.status.value,
        "meeting_type": m.meeting_type.value,
        "meeting_date": m.meeting_date.isoformat() if m.meeting_date else None,
        "meeting_time": m.meeting_time,
    }


# =============================================================================
# ОБЩИЕ ХЕЛПЕРЫ
# =============================================================================
def _load(s: Session, meeting_id: str) -> Meeting:
    meeting = MeetingRepository(s).get(meeting_id)
    if meeting is None:
        raise NotFoundError("Встреча не найдена", {"meeting_id": meeting_id})
    return meeting


def _ensure_party(meeting: Meeting, ctx: AuthContext, *, allow_admin: bool = True) -> None:
    if ctx.role == Role.admin and allow_admin:
        return
    if ctx.role == Role.client and meeting.client_id == ctx.user_id:
        return
    if ctx.role == Role.counselor and meeting.counselor_id == ctx.user_id:
        return
    raise ForbiddenError("Нет доступа к встрече", {"meeting_id": meeting.id})


def _clean_text(value: str | None, *, max_len: int, name: str) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if len(text) > max_len:
        raise ValidationError("Слишком длинный текст", {"field": name, "max_len": max_len})
    return text or None


def _is_expired(meeting: Meeting, now: datetime) -> bool:
    return (
        meeting.status in EXPIRABLE_STATUSES
        and meeting.auto_expire_at is not None
        and as_utc(meeting.auto_expire_at) < now
    )


def scheduled_at(meeting: Meeting, counselor: Counselor | None) -> datetime:
    """
    Момент начала встречи в UTC (дата + HH:MM в поясе консультанта).
    Бросает ValueError, если дата/время не заданы или некорректны.
    """
    if meeting.meeting_date is None or not meeting.meeting_time:
        raise ValueError("meeting_date/meeting_time not set")
    tz_name = counselor.timezone if counselor is not None else None
    return meeting_start_utc(
        meeting.meeting_date,
        meeting.meeting_time,
        tz_name or get_settings().booking_default_timezone,
    )


def apply_transition(
    s: Session,
    meeting: Meeting,
    target: MeetingStatus,
    values: dict[str, Any] | None = None,
    *,
    source: str = "api",
) -> Meeting | None:
    """
    Применить переход условным UPDATE.

    Ребра нет → InvalidStateError. Строка не обновлена (статус успели
    поменять) → None; вызывающий решает, ошибка это или пропуск.
    """
    current = meeting.status
    result = transition(current, target)
    if not result.ok:
        raise InvalidStateError(
            details={
                "meeting_id": meeting.id,
                "from": current.value,
                "to": target.value,
                "reason": result.reason,
            }
        )

    repo = MeetingRepository(s)
    if not repo.transition(meeting.id, expected=(current,), values={"status": target, **(values or {})}):
        return None
    record_transition(current, target, source=source)
    log.info(
        "meeting_transition",
        extra={
            "payload": {
                "meeting_id": meeting.id,
                "from": current.value,
                "to": target.value,
                "source": source,
            }
        },
    )
    return repo.get(meeting.id, fresh=True)


def _transition_or_raise(
    s: Session, meeting: Meeting, target: MeetingStatus, values: dict[str, Any] | None = None
) -> Meeting:
    updated = apply_transition(s, meeting, target, values)
    if updated is None:
        fresh = MeetingRepository(s).get(meeting.id, fresh=True)
        raise InvalidStateError(
            "Статус встречи изменился",
            {
                "meeting_id": meeting.id,
                "expected": meeting.status.value,
                "current": fresh.status.value if fresh else None,
            },
        )
    return updated


def expire_meeting(s: Session, meeting: Meeting, *, source: str = "api") -> Meeting | None:
    return apply_transition(
        s,
        meeting,
        MeetingStatus.cancelled,
        {"cancellation_reason": AUTO_EXPIRED_REASON},
        source=source,
    )


# =============================================================================
# 1. СОЗДАНИЕ ЗАПРОСА
# =============================================================================
def initiate_booking(
    ctx: AuthContext,
    *,
    meeting_type: str | MeetingType,
    issue_description: str,
    use_previous_counselor: bool = False,
    now: datetime | None = None,
) -> Meeting:
    if ctx.role != Role.client:
        raise ForbiddenError("Запрос может создать только клиент")
    try:
        mtype = MeetingType(meeting_type)
    except ValueError as e:
        raise ValidationError("Некорректный формат встречи", {"meeting_type": str(meeting_type)}) from e
    description = _clean_text(
        issue_description, max_len=ISSUE_DESCRIPTION_MAX_LEN, name="issue_description"
    )
    if not description:
        raise ValidationError("Опишите запрос", {"field": "issue_description"})
    now = now or utc_now()
    s_cfg = get_settings()
    effects = _SideEffects()

    with db_session() as s:
        client = ClientRepository(s).get(ctx.user_id)
        if client is None:
            raise NotFoundError("Клиент не найден", {"client_id": ctx.user_id})

        counselor: Counselor | None = None
        if use_previous_counselor and client.current_counselor_id:
            candidate = CounselorRepository(s).get(client.current_counselor_id)
            if candidate is not None and candidate.is_active and candidate.is_available:
                counselor = candidate

        meeting = Meeting(
            id=new_meeting_id(),
            client_id=client.id,
            counselor_id=counselor.id if counselor else None,
            meeting_type=mtype,
            issue_description=description,
            meeting_duration=s_cfg.booking_default_duration_min,
            status=(
                MeetingStatus.counselor_assigned if counselor else MeetingStatus.request_pending
            ),
            auto_assigned=counselor is not None,
            created_at=now,
            updated_at=now,
        )
        MeetingRepository(s).save(meeting)
        s.flush()

        effects.admin("new_booking", {"meeting_id": meeting.id, "auto_assigned": meeting.auto_assigned})
        if counselor is not None:
            effects.publish(counselor.id, "counselor_assigned", _meeting_payload(meeting))
            effects.mail(
                counselor.email,
                "counselor_assignment",
                {"meeting_type": mtype.value, "returning_note": " This is a returning client."},
            )
        else:
            effects.mail(s_cfg.admin_email, "new_meeting_request", {"meeting_type": mtype.value})

    log.info(
        "meeting_requested",
        extra={"payload": {"meeting_id": meeting.id, "auto_assigned": meeting.auto_assigned}},
    )
    effects.run()
    return meeting


# =============================================================================
# 2. НАЗНАЧЕНИЕ КОНСУЛЬТАНТА (admin)
# =============================================================================
def assign_counselor(
    ctx: AuthContext, *, meeting_id: str, counselor_id: str, now: datetime | None = None
) -> Meeting:
    if ctx.role != Role.admin:
        raise ForbiddenError("Назначать консультанта может только администратор")
    now = now or utc_now()
    effects = _SideEffects()

    with db_session() as s:
        meeting = _load(s, meeting_id)
        counselor = CounselorRepository(s).get(counselor_id)
        if counselor is None or not counselor.is_active:
            raise NotFoundError("Консультант не найден", {"counselor_id": counselor_id})

        meeting = _transition_or_raise(
            s,
            meeting,
            MeetingStatus.counselor_assigned,
            {
                "counselor_id": counselor.id,
                "admin_assigned_by": ctx.user_id,
                "admin_assigned_at": now,
            },
        )
        client = ClientRepository(s).get(meeting.client_id)

        payload = _meeting_payload(meeting)
        effects.publish(meeting.client_id, "counselor_assigned", payload)
        effects.publish(counselor.id, "new_assignment", payload)
        effects.mail(
            counselor.email,
            "counselor_assignment",
            {"meeting_type": meeting.meeting_type.value, "returning_note": ""},
        )
        effects.mail(client.email if client else None, "counselor_assigned", {})

    effects.run()
    return meeting


# =============================================================================
# 3. ВЫБОР ВРЕМЕНИ (client)
# =============================================================================
def select_time(
    ctx: AuthContext,
    *,
    meeting_id: str,
    meeting_date: str,
    meeting_time: str,
    now: datetime | None = None,
) -> Meeting:
    day = parse_day(meeting_date)
    try:
        hhmm_time = parse_hhmm(meeting_time)
    except ValueError as e:
        raise ValidationError("Некорректное время", {"meeting_time": str(meeting_time)[:16]}) from e
    hhmm = f"{hhmm_time.hour:02d}:{hhmm_time.minute:02d}"
    now = now or utc_now()
    cfg = get_settings()
    effects = _SideEffects()

    with db_session() as s:
        meeting = _load(s, meeting_id)
        if ctx.role != Role.client or meeting.client_id != ctx.user_id:
            raise ForbiddenError("Время выбирает клиент встречи")

        check = transition(meeting.status, MeetingStatus.time_selected)
        if not check.ok or not meeting.counselor_id:
            raise InvalidStateError(
                details={
                    "meeting_id": meeting.id,
                    "from": meeting.status.value,
                    "to": MeetingStatus.time_selected.value,
                    "reason": check.reason or "counselor_not_assigned",
                }
            )

        counselor = CounselorRepository(s).get_for_update(meeting.counselor_id)
        if counselor is None:
            raise NotFoundError("Консультант не найден", {"counselor_id": meeting.counselor_id})
        hours = working_hours(counselor)
        grid = generate_slots(hours.start, hours.end, interval_min=cfg.booking_slot_interval_min)

        start = meeting_start_utc(day, hhmm, hours.timezone)
        min_start = now + timedelta(hours=cfg.booking_min_advance_hours)
        if start < min_start:
            raise ValidationError(
                "Встречу нужно бронировать заранее",
                {"min_advance_hours": cfg.booking_min_advance_hours},
            )
        if not within_working_hours(hhmm, hours.start, hours.end):
            raise ValidationError(
                "Время вне рабочих часов консультанта",
                {"start": hours.start, "end": hours.end},
            )
        # Только начала слотов сетки: занятость проверяется точным "HH:MM",
        # время между слотами дало бы частично пересекающиеся встречи
        if hhmm not in grid:
            raise ValidationError(
                "Время не совпадает с сеткой слотов",
                {"interval_min": cfg.booking_slot_interval_min},
            )
        if is_unavailable(day, counselor.unavailable_dates or []):
            raise ValidationError("Консультант недоступен в эту дату", {"date": day.isoformat()})

        repo = MeetingRepository(s)
        freed = repo.expire_slot_holders(counselor.id, day, hhmm, now=now)
        if freed:
            log.info(
                "slot_stale_holds_expired",
                extra={"payload": {"counselor_id": counselor.id, "count": freed}},
            )

        booked = repo.booked_times(counselor.id, day)
        if hhmm in booked:
            SLOT_CONFLICTS_TOTAL.inc()
            raise ConflictError("Слот уже занят", {"date": day.isoformat(), "time": hhmm})
        if daily_limit_reached(counselor, booked):
            raise ConflictError(
                "Достигнут дневной лимит встреч консультанта",
                {"max_daily_meetings": counselor.max_daily_meetings},
            )
        if consecutive_limit_exceeded(counselor, grid, booked, hhmm):
            raise ConflictError(
                "Превышен лимит встреч подряд",
                {"max_consecutive_meetings": counselor.max_consecutive_meetings},
            )

        deadline = now + timedelta(hours=cfg.booking_response_window_hours)
        try:
            meeting = _transition_or_raise(
                s,
                meeting,
                MeetingStatus.time_selected,
                {
                    "meeting_date": day,
                    "meeting_time": hhmm,
                    "counselor_response_deadline": deadline,
                    "auto_expire_at": deadline,
                },
            )
        except IntegrityError as e:
            SLOT_CONFLICTS_TOTAL.inc()
            raise ConflictError("Слот уже занят", {"date": day.isoformat(), "time": hhmm}) from e

        payload = _meeting_payload(meeting)
        effects.publish(counselor.id, "meeting_time_selected", payload)
        effects.admin("booking_updated", payload)
        effects.mail(
            counselor.email,
            "meeting_time_selected",
            {"meeting_date": day.isoformat(), "meeting_time": hhmm, "deadline": deadline.isoformat()},
        )

    effects.run()
    return meeting


# =============================================================================
# 4. ПОДТВЕРЖДЕНИЕ (counselor)
# =============================================================================
def accept_meeting(ctx: AuthContext, *, meeting_id: str, now: datetime | None = None) -> Meeting:
    now = now or utc_now()
    effects = _SideEffects()

    # Шаг 1: проверки и истечение (короткая транзакция)
    expired = False
    with db_session() as s:
        meeting = _load(s, meeting_id)
        if ctx.role not in (Role.counselor, Role.admin):
            raise ForbiddenError("Подтверждает консультант")
        _ensure_party(meeting, ctx)

        if _is_expired(meeting, now):
            if expire_meeting(s, meeting) is None:
                raise InvalidStateError("Статус встречи изменился", {"meeting_id": meeting_id})
            expired = True
        else:
            check = transition(meeting.status, MeetingStatus.confirmed)
            if not check.ok:
                raise InvalidStateError(
                    details={
                        "meeting_id": meeting.id,
                        "from": meeting.status.value,
                        "to": MeetingStatus.confirmed.value,
                        "reason": check.reason,
                    }
                )
            counselor = CounselorRepository(s).get(meeting.counselor_id)
            try:
                start = scheduled_at(meeting, counselor)
            except ValueError as e:
                raise InvalidStateError(
                    "Дата и время встречи не заданы", {"meeting_id": meeting.id}
                ) from e
            expected_status = meeting.status

    if expired:
        get_publisher().to_user(meeting.client_id, "booking_expired", {"meeting_id": meeting_id})
        raise ExpiredError("Срок ответа консультанта истёк", {"meeting_id": meeting_id})

    # Шаг 2: комната у провайдера (вне транзакции; ProviderError → статус не меняется)
    room = None
    if meeting.meeting_type == MeetingType.virtual:
        room = video_service.create_room_for_meeting(
            meeting.id, scheduled_at=start, duration_min=meeting.meeting_duration
        )

    # Шаг 3: условный переход time_selected → confirmed
    with db_session() as s:
        values: dict[str, Any] = {"auto_expire_at": None}
        if room is not None:
            values.update(daily_room_name=room.name, daily_room_url=room.url)
        repo = MeetingRepository(s)
        if not repo.transition(
            meeting_id, expected=(expected_status,), values={"status": MeetingStatus.confirmed, **values}
        ):
            fresh = repo.get(meeting_id, fresh=True)
            if room is not None and (fresh is None or fresh.daily_room_name != room.name):
                video_service.delete_room(room.name)
            raise InvalidStateError(
                "Статус встречи изменился",
                {
                    "meeting_id": meeting_id,
                    "expected": expected_status.value,
                    "current": fresh.status.value if fresh else None,
                },
            )
        record_transition(expected_status, MeetingStatus.confirmed)
        meeting = repo.get(meeting_id, fresh=True)
        client = ClientRepository(s).get(meeting.client_id)

        payload = _meeting_payload(meeting)
        effects.publish(meeting.client_id, "meeting_confirmed", payload)
        effects.admin("booking_updated", payload)
        effects.mail(
            client.email if client else None,
            "meeting_confirmed",
            {
                "meeting_type": meeting.meeting_type.value,
                "meeting_date": meeting.meeting_date.isoformat(),
                "meeting_time": meeting.meeting_time,
            },
        )

    log.info(
        "meeting_confirmed",
        extra={"payload": {"meeting_id": meeting_id, "room": room.name if room else None}},
    )
    effects.run()
    return meeting


# =============================================================================
# 5. ОТМЕНА / NO-SHOW / ЗАВЕРШЕНИЕ
# =============================================================================
def cancel_meeting(
    ctx: AuthContext,
    *,
    meeting_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Meeting:
    text = _clean_text(reason, max_len=REASON_MAX_LEN, name="reason")
    now = now or utc_now()
    cfg = get_settings()
    effects = _SideEffects()

    with db_session() as s:
        meeting = _load(s, meeting_id)
        _ensure_party(meeting, ctx)
        meeting = _transition_or_raise(
            s,
            meeting,
            MeetingStatus.cancelled,
            {"cancellation_reason": text or f"cancelled_by_{ctx.role.value}"},
        )
        apply_outcome(s, meeting, MeetingStatus.cancelled, now=now)

        client = ClientRepository(s).get(meeting.client_id)
        payload = _meeting_payload(meeting)
        data = {
            "meeting_date": payload["meeting_date"] or "",
            "meeting_time": meeting.meeting_time or "",
            "reason": meeting.cancellation_reason,
        }
        effects.publish(meeting.client_id, "booking_cancelled", payload)
        effects.publish(meeting.counselor_id, "booking_cancelled", payload)
        effects.admin("booking_updated", payload)
        effects.mail(client.email if client else None, "meeting_cancelled", data)
        effects.mail(cfg.admin_email, "meeting_cancelled", data)

    effects.run()
    return meeting


def report_no_show(
    ctx: AuthContext,
    *,
    meeting_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Meeting:
    text = _clean_text(reason, max_len=REASON_MAX_LEN, name="reason")
    now = now or utc_now()
    effects = _SideEffects()

    with db_session() as s:
        meeting = _load(s, meeting_id)
        _ensure_party(meeting, ctx)
        meeting = _transition_or_raise(
            s,
            meeting,
            MeetingStatus.abandoned,
            {
                "no_show_reason": text,
                "no_show_reported_by": ctx.role.value,
                "grace_active": False,
            },
        )
        apply_outcome(s, meeting, MeetingStatus.abandoned, now=now)

        payload = _meeting_payload(meeting)
        effects.admin("no_show_reported", {**payload, "reported_by": ctx.role.value})
        effects.mail(
            get_settings().admin_email,
            "meeting_no_show",
            {"meeting_date": payload["meeting_date"], "meeting_time": meeting.meeting_time},
        )

    effects.run()
    video_service.delete_room(meeting.daily_room_name)
    return meeting


def complete_meeting(ctx: AuthContext, *, meeting_id: str, now: datetime | None = None) -> Meeting:
    now = now or utc_now()
    effects = _SideEffects()

    with db_session() as s:
        meeting = _load(s, meeting_id)
        _ensure_party(meeting, ctx)
        meeting = _transition_or_raise(
            s, meeting, MeetingStatus.completed, {"grace_active": False}
        )
        apply_outcome(s, meeting, MeetingStatus.completed, now=now)

        client = ClientRepository(s).get(meeting.client_id)
        payload = _meeting_payload(meeting)
        effects.publish(meeting.client_id, "meeting_completed", payload)
        effects.publish(meeting.counselor_id, "meeting_completed", payload)
        effects.admin("booking_updated", payload)
        effects.mail(client.email if client else None, "meeting_completed", {})

    effects.run()
    video_service.delete_room(meeting.daily_room_name)
    return meeting


# =============================================================================
# 6. ПРИСУТСТВИЕ
# =============================================================================
def _presence_flag(meeting: Meeting, ctx: AuthContext) -> str:
    if ctx.role == Role.client and meeting.client_id == ctx.user_id:
        return "client_joined"
    if ctx.role == Role.counselor and meeting.counselor_id == ctx.user_id:
        return "counselor_joined"
    raise ForbiddenError("Присутствие отмечают только участники встречи")


def record_join(ctx: AuthContext, *, meeting_id: str, now: datetime | None = None) -> Meeting:
    with db_session() as s:
        meeting = _load(s, meeting_id)
        flag = _presence_flag(meeting, ctx)
        repo = MeetingRepository(s)
        if not repo.transition(
            meeting_id, expected=(MeetingStatus.confirmed,), values={flag: True}
        ):
            raise InvalidStateError(
                "Встреча не подтверждена",
                {"meeting_id": meeting_id, "status": meeting.status.value},
            )
        meeting = repo.get(meeting_id, fresh=True)

    other = meeting.counselor_id if flag == "client_joined" else meeting.client_id
    get_publisher().to_user(other, "participant_joined", {"meeting_id": meeting_id, "who": ctx.role.value})
    return meeting


def record_leave(ctx: AuthContext, *, meeting_id: str, now: datetime | None = None) -> Meeting:
    """
    Участник вышел: открыть grace-окно до
    max(now, начало + длительность) + GRACE_PERIOD_MIN.
    Уже открытое окно не продлевается.
    """
    now = now or utc_now()
    cfg = get_settings()

    with db_session() as s:
        meeting = _load(s, meeting_id)
        flag = _presence_flag(meeting, ctx)
        if meeting.status != MeetingStatus.confirmed:
            raise InvalidStateError(
                "Встреча не подтверждена",
                {"meeting_id": meeting_id, "status": meeting.status.value},
            )
        if meeting.grace_active:
            return meeting

        counselor = CounselorRepository(s).get(meeting.counselor_id)
        try:
            end = scheduled_at(meeting, counselor) + timedelta(minutes=meeting.meeting_duration)
        except ValueError:
            end = now
        grace_end = max(now, end) + timedelta(minutes=cfg.grace_period_min)

        repo = MeetingRepository(s)
        opened = repo.transition(
            meeting_id,
            expected=(MeetingStatus.confirmed,),
            values={"grace_active": True, "grace_end_time": grace_end},
            where=(Meeting.grace_active.is_(False),),
        )
        meeting = repo.get(meeting_id, fresh=True)
        if not opened and meeting.status != MeetingStatus.confirmed:
            raise InvalidStateError(
                "Встреча не подтверждена",
                {"meeting_id": meeting_id, "status": meeting.status.value},
            )

    if opened:
        log.info(
            "meeting_grace_started",
            extra={"payload": {"meeting_id": meeting_id, "left": flag, "grace_end": grace_end}},
        )
        other = meeting.counselor_id if flag == "client_joined" else meeting.client_id
        get_publisher().to_user(other, "participant_left", {"meeting_id": meeting_id, "who": ctx.role.value})
    return meeting


# =============================================================================
# 7. ТОКЕН ВХОДА
# =============================================================================
@dataclass
class MeetingToken:
    meeting_id: str
    token: str
    room_name: str
    room_url: str
    join_as: str
    scheduled_at: datetime
    duration_min: int


def get_meeting_token(
    ctx: AuthContext, *, meeting_id: str, now: datetime | None = None
) -> MeetingToken:
    """
    Окно входа: [начало - JOIN_EARLY_MIN, начало + длительность].
    Раньше → ValidationError, позже → ExpiredError.
    """
    now = now or utc_now()
    cfg = get_settings()

    with db_session() as s:
        meeting = _load(s, meeting_id)
        if ctx.role not in (Role.client, Role.counselor):
            raise ForbiddenError("Токен выдаётся только участникам встречи")
        _ensure_party(meeting, ctx, allow_admin=False)
        if meeting.status != MeetingStatus.confirmed:
            raise InvalidStateError(
                "Встреча не подтверждена",
                {"meeting_id": meeting_id, "status": meeting.status.value},
            )
        if not meeting.daily_room_name or not meeting.daily_room_url:
            raise InvalidStateError("Видеокомната не настроена", {"meeting_id": meeting_id})
        counselor = CounselorRepository(s).get(meeting.counselor_id)
        try:
            start = scheduled_at(meeting, counselor)
        except ValueError as e:
            raise InvalidStateError("Дата и время встречи не заданы", {"meeting_id": meeting_id}) from e

    opens_at = start - timedelta(minutes=cfg.join_early_min)
    closes_at = start + timedelta(minutes=meeting.meeting_duration)
    if now < opens_at:
        raise ValidationError(
            "Комната ещё недоступна",
            {"opens_at": opens_at.isoformat(), "join_early_min": cfg.join_early_min},
        )
    if now > closes_at:
        raise ExpiredError("Встреча уже закончилась", {"closed_at": closes_at.isoformat()})

    is_client = ctx.role == Role.client
    token = video_service.issue_token(
        meeting.daily_room_name,
        is_client=is_client,
        scheduled_at=start,
        duration_min=meeting.meeting_duration,
    )
    return MeetingToken(
        meeting_id=meeting.id,
        token=token,
        room_name=meeting.daily_room_name,
        room_url=meeting.daily_room_url,
        join_as="Anonymous Client" if is_client else "Anonymous Counselor",
        scheduled_at=start,
        duration_min=meeting.meeting_duration,
    )


# =============================================================================
# 8. ЧТЕНИЕ
# =============================================================================
def get_meeting(ctx: AuthContext, *, meeting_id: str) -> Meeting:
    with db_session() as s:
        meeting = _load(s, meeting_id)
        _ensure_party(meeting, ctx)
        return meeting


def get_active_booking(ctx: AuthContext) -> Meeting | None:
    if ctx.role != Role.client:
        raise ForbiddenError("Активная запись есть только у клиента")
    with db_session() as s:
        return MeetingRepository(s).active_for_client(ctx.user_id)


def get_counselor_active_session(ctx: AuthContext) -> Meeting | None:
    if ctx.role != Role.counselor:
        raise ForbiddenError("Только для консультанта")
    with db_session() as s:
        return MeetingRepository(s).confirmed_for_counselor(ctx.user_id)
