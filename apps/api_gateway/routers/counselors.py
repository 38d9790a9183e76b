"""
HTTP роуты консультанта и истории.

- GET /v1/counselors/{id}/slots?date=YYYY-MM-DD
- GET /v1/counselors/me/active-session
- GET /v1/counselors/{id}/statistics
- GET /v1/counselors/{id}/feedback
- GET /v1/counselors/{id}/history
- GET /v1/clients/{id}/history
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from apps.api_gateway.deps import auth_dep, raise_http
from apps.api_gateway.routers.bookings import meeting_response
from counseling_engine.common.errors import AppError, ForbiddenError
from counseling_engine.common.security import AuthContext
from counseling_engine.contracts.http_api import (
    ActiveMeetingResponse,
    CounselorStatisticsResponse,
    FeedbackItemResponse,
    FeedbackResponse,
    HistoryItemResponse,
    HistoryResponse,
    RecentSessionResponse,
    SlotsResponse,
)
from counseling_engine.domain.enums import Role
from counseling_engine.services import booking_service, history_service, statistics_service
from counseling_engine.services.slot_service import get_available_slots, parse_day

router = APIRouter()


def _ensure_self_or_admin(ctx: AuthContext, counselor_id: str) -> None:
    if ctx.role == Role.admin:
        return
    if ctx.role == Role.counselor and ctx.user_id == counselor_id:
        return
    raise ForbiddenError("Доступно только самому консультанту")


def _history_response(items) -> HistoryResponse:
    return HistoryResponse(
        items=[
            HistoryItemResponse(
                meeting_id=i.meeting_id,
                status=i.status,
                meeting_type=i.meeting_type,
                meeting_date=i.meeting_date,
                meeting_time=i.meeting_time,
                counterpart=i.counterpart_label,
                rating=i.rating,
                feedback=i.feedback,
            )
            for i in items
        ]
    )


@router.get("/counselors/me/active-session", response_model=ActiveMeetingResponse)
def counselor_active_session(ctx: AuthContext = Depends(auth_dep)) -> ActiveMeetingResponse:
    try:
        m = booking_service.get_counselor_active_session(ctx)
    except AppError as e:
        raise_http(e)
    return ActiveMeetingResponse(meeting=meeting_response(m) if m else None)


@router.get("/counselors/{counselor_id}/slots", response_model=SlotsResponse)
def counselor_slots(
    counselor_id: str,
    date: str = Query(..., description="YYYY-MM-DD"),
    ctx: AuthContext = Depends(auth_dep),
) -> SlotsResponse:
    try:
        day = parse_day(date)
        slots = get_available_slots(counselor_id, day)
    except AppError as e:
        raise_http(e)
    return SlotsResponse(counselor_id=counselor_id, date=day, slots=slots)


@router.get("/counselors/{counselor_id}/statistics", response_model=CounselorStatisticsResponse)
def counselor_statistics(
    counselor_id: str, ctx: AuthContext = Depends(auth_dep)
) -> CounselorStatisticsResponse:
    try:
        _ensure_self_or_admin(ctx, counselor_id)
        st = statistics_service.get_counselor_statistics(counselor_id)
    except AppError as e:
        raise_http(e)
    return CounselorStatisticsResponse(
        counselor_id=st.counselor_id,
        total_sessions=st.total_sessions,
        completed_sessions=st.completed_sessions,
        cancelled_sessions=st.cancelled_sessions,
        active_clients=st.active_clients,
        total_ratings=st.total_ratings,
        average_rating=st.average_rating,
        recent_sessions=[
            RecentSessionResponse(
                meeting_id=r.meeting_id,
                meeting_date=r.meeting_date,
                meeting_time=r.meeting_time,
                meeting_type=r.meeting_type,
            )
            for r in st.recent_sessions
        ],
    )


@router.get("/counselors/{counselor_id}/feedback", response_model=FeedbackResponse)
def counselor_feedback(
    counselor_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: AuthContext = Depends(auth_dep),
) -> FeedbackResponse:
    try:
        _ensure_self_or_admin(ctx, counselor_id)
        items = statistics_service.get_counselor_feedback(counselor_id, limit=limit)
    except AppError as e:
        raise_http(e)
    return FeedbackResponse(items=[FeedbackItemResponse(**i) for i in items])


@router.get("/counselors/{counselor_id}/history", response_model=HistoryResponse)
def counselor_history(
    counselor_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: AuthContext = Depends(auth_dep),
) -> HistoryResponse:
    try:
        items = history_service.get_counselor_session_history(ctx, counselor_id, limit=limit)
    except AppError as e:
        raise_http(e)
    return _history_response(items)


@router.get("/clients/{client_id}/history", response_model=HistoryResponse)
def client_history(
    client_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: AuthContext = Depends(auth_dep),
) -> HistoryResponse:
    try:
        items = history_service.get_client_session_history(ctx, client_id, limit=limit)
    except AppError as e:
        raise_http(e)
    return _history_response(items)
