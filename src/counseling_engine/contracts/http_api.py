"""
HTTP API контракты (Pydantic-модели).

Назначение:
- валидация входа/выхода на уровне FastAPI
- стабильные структуры для клиентов
- собеседник встречи не раскрывается (анонимные сессии)
"""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

from counseling_engine.domain.enums import MeetingType

from .versions import HTTP_API_VERSION


# =============================================================================
# ЗАПРОСЫ
# =============================================================================
class BookingCreateRequest(BaseModel):
    meeting_type: MeetingType
    issue_description: str = Field(min_length=1, max_length=2000)
    use_previous_counselor: bool = False


class AssignCounselorRequest(BaseModel):
    counselor_id: str = Field(min_length=1)


class SelectTimeRequest(BaseModel):
    meeting_date: str = Field(description="YYYY-MM-DD")
    meeting_time: str = Field(description="HH:MM в поясе консультанта")


class ReasonRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class RatingRequest(BaseModel):
    # strict: "5" и true не принимаются
    rating: int = Field(strict=True)
    feedback: str | None = Field(default=None, max_length=1000)


# =============================================================================
# ОТВЕТЫ
# =============================================================================
class MeetingResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    meeting_id: str
    status: str
    meeting_type: str
    client_id: str
    counselor_id: str | None = None
    meeting_date: date | None = None
    meeting_time: str | None = None
    meeting_duration: int
    auto_assigned: bool = False
    counselor_response_deadline: datetime | None = None
    client_joined: bool = False
    counselor_joined: bool = False
    grace_active: bool = False
    grace_end_time: datetime | None = None
    has_room: bool = False
    cancellation_reason: str | None = None


class ActiveMeetingResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    meeting: MeetingResponse | None = None


class SlotsResponse(BaseModel):
    counselor_id: str
    date: date
    slots: list[str]


class MeetingTokenResponse(BaseModel):
    meeting_id: str
    token: str
    room_name: str
    room_url: str
    join_as: str
    scheduled_at: datetime
    duration_min: int


class RatingResponse(BaseModel):
    meeting_id: str
    rating: int
    feedback: str | None = None
    average_rating: float
    total_ratings: int


class RatingStatusResponse(BaseModel):
    is_rated: bool
    rating: int | None = None
    feedback: str | None = None


class HistoryItemResponse(BaseModel):
    meeting_id: str
    status: str
    meeting_type: str
    meeting_date: date | None = None
    meeting_time: str | None = None
    counterpart: str
    rating: int | None = None
    feedback: str | None = None


class HistoryResponse(BaseModel):
    items: list[HistoryItemResponse]


class RecentSessionResponse(BaseModel):
    meeting_id: str
    meeting_date: date | None = None
    meeting_time: str | None = None
    meeting_type: str


class CounselorStatisticsResponse(BaseModel):
    counselor_id: str
    total_sessions: int
    completed_sessions: int
    cancelled_sessions: int
    active_clients: int
    total_ratings: int
    average_rating: float
    recent_sessions: list[RecentSessionResponse] = Field(default_factory=list)


class FeedbackItemResponse(BaseModel):
    meeting_id: str
    session_date: date | None = None
    session_type: str
    rating: int
    feedback: str | None = None
    rated_at: datetime | None = None


class FeedbackResponse(BaseModel):
    items: list[FeedbackItemResponse]
