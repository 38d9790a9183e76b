"""
Admin endpoints.

Назначение:
- назначение консультанта на запрос
- ручной запуск reconciliation
- состояние/сброс circuit breaker видеопровайдера
- readiness и список онлайн-пользователей
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from apps.api_gateway.deps import admin_auth_dep, raise_http
from apps.api_gateway.routers.bookings import meeting_response
from counseling_engine.common.errors import AppError
from counseling_engine.common.security import AuthContext
from counseling_engine.contracts.http_api import AssignCounselorRequest, MeetingResponse
from counseling_engine.jobs.reconciliation_job import run as run_reconciliation
from counseling_engine.services import booking_service
from counseling_engine.services.readiness_service import evaluate_readiness
from counseling_engine.services.video_service import (
    VideoCircuitBreakerState,
    get_video_circuit_breaker_state,
    reset_video_circuit_breaker,
)

router = APIRouter()


class ReconcileResponse(BaseModel):
    enabled: bool
    expired: int = 0
    grace_resolved: int = 0
    overdue_resolved: int = 0
    skipped: int = 0


class VideoCircuitBreakerResponse(BaseModel):
    state: str
    consecutive_failures: int
    opened_at: str | None
    last_error: str | None
    updated_at: str


class ReadinessIssueResponse(BaseModel):
    severity: str
    code: str
    message: str


class SystemReadinessResponse(BaseModel):
    ready: bool
    issues: list[ReadinessIssueResponse]


class PresenceResponse(BaseModel):
    online_users: list[str]


def _as_cb_response(state: VideoCircuitBreakerState) -> VideoCircuitBreakerResponse:
    return VideoCircuitBreakerResponse(
        state=state.state,
        consecutive_failures=state.consecutive_failures,
        opened_at=state.opened_at,
        last_error=state.last_error,
        updated_at=state.updated_at,
    )


@router.post("/admin/bookings/{meeting_id}/assign", response_model=MeetingResponse)
def admin_assign_counselor(
    meeting_id: str,
    req: AssignCounselorRequest,
    ctx: AuthContext = Depends(admin_auth_dep),
) -> MeetingResponse:
    try:
        m = booking_service.assign_counselor(
            ctx, meeting_id=meeting_id, counselor_id=req.counselor_id
        )
    except AppError as e:
        raise_http(e)
    return meeting_response(m)


@router.post(
    "/admin/reconciliation/run",
    response_model=ReconcileResponse,
    dependencies=[Depends(admin_auth_dep)],
)
def admin_run_reconciliation() -> ReconcileResponse:
    result = run_reconciliation(source="manual")
    if result is None:
        return ReconcileResponse(enabled=False)
    return ReconcileResponse(
        enabled=True,
        expired=result.expired,
        grace_resolved=result.grace_resolved,
        overdue_resolved=result.overdue_resolved,
        skipped=result.skipped,
    )


@router.get(
    "/admin/video/circuit-breaker",
    response_model=VideoCircuitBreakerResponse,
    dependencies=[Depends(admin_auth_dep)],
)
def admin_video_circuit_breaker() -> VideoCircuitBreakerResponse:
    return _as_cb_response(get_video_circuit_breaker_state())


@router.post(
    "/admin/video/circuit-breaker/reset",
    response_model=VideoCircuitBreakerResponse,
    dependencies=[Depends(admin_auth_dep)],
)
def admin_video_circuit_breaker_reset() -> VideoCircuitBreakerResponse:
    return _as_cb_response(reset_video_circuit_breaker(reason="manual_reset"))


@router.get(
    "/admin/system/readiness",
    response_model=SystemReadinessResponse,
    dependencies=[Depends(admin_auth_dep)],
)
def admin_system_readiness() -> SystemReadinessResponse:
    state = evaluate_readiness()
    return SystemReadinessResponse(
        ready=state.ready,
        issues=[
            ReadinessIssueResponse(severity=i.severity, code=i.code, message=i.message)
            for i in state.issues
        ],
    )


@router.get(
    "/admin/presence",
    response_model=PresenceResponse,
    dependencies=[Depends(admin_auth_dep)],
)
def admin_presence(request: Request) -> PresenceResponse:
    return PresenceResponse(online_users=request.app.state.presence.online_users())
