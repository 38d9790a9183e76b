"""
HTTP роуты жизненного цикла встречи.

- POST /v1/bookings                       : клиент создаёт запрос
- GET  /v1/bookings/active                : активная запись клиента
- GET  /v1/bookings/{id}
- POST /v1/bookings/{id}/time             : клиент выбирает слот
- POST /v1/bookings/{id}/accept           : консультант подтверждает
- POST /v1/bookings/{id}/cancel
- POST /v1/bookings/{id}/no-show
- POST /v1/bookings/{id}/complete
- POST /v1/bookings/{id}/join | /leave    : присутствие
- GET  /v1/bookings/{id}/token            : токен входа в видеокомнату
- POST/GET /v1/bookings/{id}/rating

Авторизация: Depends(auth_dep)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from apps.api_gateway.deps import auth_dep, raise_http
from counseling_engine.common.errors import AppError
from counseling_engine.common.security import AuthContext, require_role
from counseling_engine.contracts.http_api import (
    ActiveMeetingResponse,
    BookingCreateRequest,
    MeetingResponse,
    MeetingTokenResponse,
    RatingRequest,
    RatingResponse,
    RatingStatusResponse,
    ReasonRequest,
    SelectTimeRequest,
)
from counseling_engine.domain.enums import Role
from counseling_engine.services import booking_service, statistics_service
from counseling_engine.storage.models import Meeting

router = APIRouter()


def meeting_response(m: Meeting) -> MeetingResponse:
    return MeetingResponse(
        meeting_id=m.id,
        status=m.status.value,
        meeting_type=m.meeting_type.value,
        client_id=m.client_id,
        counselor_id=m.counselor_id,
        meeting_date=m.meeting_date,
        meeting_time=m.meeting_time,
        meeting_duration=m.meeting_duration,
        auto_assigned=bool(m.auto_assigned),
        counselor_response_deadline=m.counselor_response_deadline,
        client_joined=bool(m.client_joined),
        counselor_joined=bool(m.counselor_joined),
        grace_active=bool(m.grace_active),
        grace_end_time=m.grace_end_time,
        has_room=bool(m.daily_room_name),
        cancellation_reason=m.cancellation_reason,
    )


@router.post("/bookings", response_model=MeetingResponse, status_code=201)
def create_booking(
    req: BookingCreateRequest, ctx: AuthContext = Depends(auth_dep)
) -> MeetingResponse:
    try:
        m = booking_service.initiate_booking(
            ctx,
            meeting_type=req.meeting_type,
            issue_description=req.issue_description,
            use_previous_counselor=req.use_previous_counselor,
        )
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.get("/bookings/active", response_model=ActiveMeetingResponse)
def active_booking(ctx: AuthContext = Depends(auth_dep)) -> ActiveMeetingResponse:
    try:
        m = booking_service.get_active_booking(ctx)
    except AppError as e:
        raise_http(e)
    return ActiveMeetingResponse(meeting=meeting_response(m) if m else None)


@router.get("/bookings/{meeting_id}", response_model=MeetingResponse)
def get_booking(meeting_id: str, ctx: AuthContext = Depends(auth_dep)) -> MeetingResponse:
    try:
        m = booking_service.get_meeting(ctx, meeting_id=meeting_id)
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.post("/bookings/{meeting_id}/time", response_model=MeetingResponse)
def select_time(
    meeting_id: str, req: SelectTimeRequest, ctx: AuthContext = Depends(auth_dep)
) -> MeetingResponse:
    try:
        m = booking_service.select_time(
            ctx,
            meeting_id=meeting_id,
            meeting_date=req.meeting_date,
            meeting_time=req.meeting_time,
        )
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.post("/bookings/{meeting_id}/accept", response_model=MeetingResponse)
def accept(meeting_id: str, ctx: AuthContext = Depends(auth_dep)) -> MeetingResponse:
    try:
        m = booking_service.accept_meeting(ctx, meeting_id=meeting_id)
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.post("/bookings/{meeting_id}/cancel", response_model=MeetingResponse)
def cancel(
    meeting_id: str, req: ReasonRequest | None = None, ctx: AuthContext = Depends(auth_dep)
) -> MeetingResponse:
    try:
        m = booking_service.cancel_meeting(
            ctx, meeting_id=meeting_id, reason=req.reason if req else None
        )
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.post("/bookings/{meeting_id}/no-show", response_model=MeetingResponse)
def no_show(
    meeting_id: str, req: ReasonRequest | None = None, ctx: AuthContext = Depends(auth_dep)
) -> MeetingResponse:
    try:
        m = booking_service.report_no_show(
            ctx, meeting_id=meeting_id, reason=req.reason if req else None
        )
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.post("/bookings/{meeting_id}/complete", response_model=MeetingResponse)
def complete(meeting_id: str, ctx: AuthContext = Depends(auth_dep)) -> MeetingResponse:
    try:
        m = booking_service.complete_meeting(ctx, meeting_id=meeting_id)
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.post("/bookings/{meeting_id}/join", response_model=MeetingResponse)
def join(meeting_id: str, ctx: AuthContext = Depends(auth_dep)) -> MeetingResponse:
    try:
        m = booking_service.record_join(ctx, meeting_id=meeting_id)
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.post("/bookings/{meeting_id}/leave", response_model=MeetingResponse)
def leave(meeting_id: str, ctx: AuthContext = Depends(auth_dep)) -> MeetingResponse:
    try:
        m = booking_service.record_leave(ctx, meeting_id=meeting_id)
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.get("/bookings/{meeting_id}/token", response_model=MeetingTokenResponse)
def meeting_token(meeting_id: str, ctx: AuthContext = Depends(auth_dep)) -> MeetingTokenResponse:
    try:
        t = booking_service.get_meeting_token(ctx, meeting_id=meeting_id)
    except AppError as e:
        raise_http(e)
    return MeetingTokenResponse(
        meeting_id=t.meeting_id,
        token=t.token,
        room_name=t.room_name,
        room_url=t.room_url,
        join_as=t.join_as,
        scheduled_at=t.scheduled_at,
        duration_min=t.duration_min,
    )


@router.post("/bookings/{meeting_id}/rating", response_model=RatingResponse)
def rate(
    meeting_id: str, req: RatingRequest, ctx: AuthContext = Depends(auth_dep)
) -> RatingResponse:
    try:
        require_role(ctx, Role.client)
        r = statistics_service.submit_rating(
            client_id=ctx.user_id,
            meeting_id=meeting_id,
            rating=req.rating,
            feedback=req.feedback,
        )
    except AppError as e:
        raise_http(e)
    return RatingResponse(
        meeting_id=r.meeting_id,
        rating=r.rating,
        feedback=r.feedback,
        average_rating=r.average_rating,
        total_ratings=r.total_ratings,
    )


@router.get("/bookings/{meeting_id}/rating", response_model=RatingStatusResponse)
def rating_status(
    meeting_id: str, ctx: AuthContext = Depends(auth_dep)
) -> RatingStatusResponse:
    try:
        require_role(ctx, Role.client)
        st = statistics_service.get_rating_status(meeting_id=meeting_id, client_id=ctx.user_id)
    except AppError as e:
        raise_http(e)
    return RatingStatusResponse(is_rated=st.is_rated, rating=st.rating, feedback=st.feedback)
