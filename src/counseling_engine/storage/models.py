"""
ORM-модели базы данных.

Назначение:
- Встреча (агрегат жизненного цикла)
- Подмножество полей консультанта/клиента, нужное ядру
- История сессий клиента (отдельная таблица, ключ meeting_id)
- Связь консультант↔клиент (учёт activeClients)

Инвариант слота держит частичный уникальный индекс
uq_meetings_live_slot: не более одной встречи в time_selected/confirmed
на (counselor_id, meeting_date, meeting_time).
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from counseling_engine.common.time import utc_now
from counseling_engine.domain.enums import MeetingStatus, MeetingType

_LIVE_SLOT_WHERE = "status IN ('time_selected', 'confirmed')"


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# COUNSELOR
# =============================================================================
class Counselor(Base):
    __tablename__ = "counselors"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    work_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    work_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # ISO-даты "YYYY-MM-DD"
    unavailable_dates: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    max_daily_meetings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_consecutive_meetings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    total_sessions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_sessions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancelled_sessions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_clients: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_ratings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


# =============================================================================
# CLIENT
# =============================================================================
class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    current_counselor_id: Mapped[str | None] = mapped_column(
        ForeignKey("counselors.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


# =============================================================================
# MEETING
# =============================================================================
class Meeting(Base):
    """
    Основная сущность: встреча.
    """

    __tablename__ = "meetings"
    __table_args__ = (
        Index(
            "uq_meetings_live_slot",
            "counselor_id",
            "meeting_date",
            "meeting_time",
            unique=True,
            postgresql_where=text(_LIVE_SLOT_WHERE),
            sqlite_where=text(_LIVE_SLOT_WHERE),
        ),
        Index("ix_meetings_status", "status"),
        Index("ix_meetings_client", "client_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id"), nullable=False)
    counselor_id: Mapped[str | None] = mapped_column(ForeignKey("counselors.id"), nullable=True)

    meeting_type: Mapped[MeetingType] = mapped_column(
        Enum(MeetingType, native_enum=False), nullable=False
    )
    issue_description: Mapped[str] = mapped_column(Text, default="", nullable=False)

    meeting_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    meeting_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    meeting_duration: Mapped[int] = mapped_column(Integer, default=45, nullable=False)

    status: Mapped[MeetingStatus] = mapped_column(
        Enum(MeetingStatus, native_enum=False),
        default=MeetingStatus.request_pending,
        nullable=False,
    )
    auto_assigned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    counselor_response_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    auto_expire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    client_joined: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    counselor_joined: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    grace_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    grace_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    daily_room_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    daily_room_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Напоминание "сессия скоро начнётся" отправлено (ставится один раз)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    no_show_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    no_show_reported_by: Mapped[str | None] = mapped_column(String(16), nullable=True)
    admin_assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    admin_assigned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


# =============================================================================
# SESSION HISTORY
# =============================================================================
class SessionHistoryEntry(Base):
    """
    Запись истории клиента. Одна на встречу; rating/feedback меняются ровно
    один раз при оценке.
    """

    __tablename__ = "session_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meeting_id: Mapped[str] = mapped_column(
        ForeignKey("meetings.id"), unique=True, nullable=False
    )
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    counselor_id: Mapped[str] = mapped_column(
        ForeignKey("counselors.id"), nullable=False, index=True
    )

    session_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    session_type: Mapped[MeetingType] = mapped_column(
        Enum(MeetingType, native_enum=False), nullable=False
    )
    status: Mapped[MeetingStatus] = mapped_column(
        Enum(MeetingStatus, native_enum=False), nullable=False
    )

    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    rated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


# =============================================================================
# COUNSELOR ↔ CLIENT
# =============================================================================
class CounselorClient(Base):
    """
    Факт "у консультанта была сессия с этим клиентом".
    Первая вставка пары увеличивает counselors.active_clients.
    """

    __tablename__ = "counselor_clients"

    counselor_id: Mapped[str] = mapped_column(ForeignKey("counselors.id"), primary_key=True)
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id"), primary_key=True)
    first_session_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
