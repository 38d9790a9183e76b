"""
FastAPI Depends.

Сюда выносим:
- проверку авторизации (Bearer JWT / X-API-Key / dev-заголовки)
- единое преобразование AppError -> HTTPException
"""

from __future__ import annotations

from typing import NoReturn

from fastapi import Header, HTTPException, Request, status

from counseling_engine.common.errors import AppError, ErrCode, UnauthorizedError
from counseling_engine.common.logging import get_project_logger
from counseling_engine.common.security import AuthContext, require_auth, require_role
from counseling_engine.domain.enums import Role

log = get_project_logger()

_STATUS_BY_CODE: dict[str, int] = {
    ErrCode.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrCode.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrCode.EXPIRED: status.HTTP_410_GONE,
    ErrCode.VIDEO_PROVIDER_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrCode.DELIVERY_PROVIDER_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrCode.REDIS_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_http(e: AppError) -> NoReturn:
    code = _STATUS_BY_CODE.get(e.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(
        status_code=code,
        detail={"code": e.code, "message": e.message, "details": e.details or {}},
    ) from e


def _request_meta(request: Request | None) -> tuple[str, str, str | None]:
    if request is None:
        return "unknown", "UNKNOWN", None
    endpoint = request.url.path
    method = request.method
    client_ip = request.client.host if request.client else None
    return endpoint, method, client_ip


def _audit_deny(
    *,
    request: Request | None,
    status_code: int,
    reason: str,
    error_code: str,
    subject: str | None = None,
) -> None:
    endpoint, method, client_ip = _request_meta(request)
    log.warning(
        "security_audit_deny",
        extra={
            "payload": {
                "endpoint": endpoint,
                "method": method,
                "status_code": status_code,
                "reason": reason,
                "error_code": error_code,
                "subject": subject or "unknown",
                "client_ip": client_ip,
            }
        },
    )


def auth_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> AuthContext:
    """
    Проверка авторизации для HTTP.
    """
    try:
        return require_auth(
            authorization=authorization,
            x_api_key=x_api_key,
            x_user_id=x_user_id,
            x_user_role=x_user_role,
        )
    except UnauthorizedError as e:
        _audit_deny(
            request=request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            reason=e.message,
            error_code=e.code,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": e.code, "message": e.message, "details": e.details or {}},
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def admin_auth_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> AuthContext:
    ctx = auth_dep(request, authorization, x_api_key, x_user_id, x_user_role)
    try:
        require_role(ctx, Role.admin)
    except AppError as e:
        _audit_deny(
            request=request,
            status_code=status.HTTP_403_FORBIDDEN,
            reason="admin_required",
            error_code=e.code,
            subject=ctx.user_id,
        )
        raise_http(e)
    return ctx
