from __future__ import annotations

import logging

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from apps.api_gateway.deps import admin_auth_dep, auth_dep
from counseling_engine.common.config import get_settings


def _make_request(*, path: str, method: str = "GET") -> Request:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": b"",
        "headers": [],
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
    }
    return Request(scope)


@pytest.fixture()
def auth_settings():
    s = get_settings()
    keys = ["auth_mode", "api_keys"]
    snapshot = {k: getattr(s, k) for k in keys}
    try:
        yield s
    finally:
        for k, v in snapshot.items():
            setattr(s, k, v)


def test_auth_dep_returns_principal(auth_settings) -> None:
    auth_settings.auth_mode = "api_key"
    auth_settings.api_keys = "k-client:cl-1:client"

    req = _make_request(path="/v1/bookings", method="POST")
    ctx = auth_dep(req, authorization=None, x_api_key="k-client", x_user_id=None, x_user_role=None)

    assert ctx.user_id == "cl-1"
    assert ctx.auth_type == "api_key"


def test_auth_dep_logs_deny_401(caplog, auth_settings) -> None:
    auth_settings.auth_mode = "api_key"
    auth_settings.api_keys = "k-client:cl-1:client"

    caplog.set_level(logging.INFO, logger="counseling-engine")
    req = _make_request(path="/v1/bookings", method="POST")
    with pytest.raises(HTTPException) as e:
        auth_dep(req, authorization=None, x_api_key="bad", x_user_id=None, x_user_role=None)
    assert e.value.status_code == 401
    assert e.value.headers == {"WWW-Authenticate": "Bearer"}

    rec = next(r for r in caplog.records if r.msg == "security_audit_deny")
    assert rec.payload["endpoint"] == "/v1/bookings"
    assert rec.payload["method"] == "POST"
    assert rec.payload["status_code"] == 401
    assert rec.payload["error_code"] == "unauthorized"


def test_admin_auth_dep_logs_deny_403_with_subject(caplog, auth_settings) -> None:
    auth_settings.auth_mode = "api_key"
    auth_settings.api_keys = "k-client:cl-1:client,k-admin:admin-1:admin"

    caplog.set_level(logging.INFO, logger="counseling-engine")
    req = _make_request(path="/v1/admin/presence")
    with pytest.raises(HTTPException) as e:
        admin_auth_dep(
            req, authorization=None, x_api_key="k-client", x_user_id=None, x_user_role=None
        )
    assert e.value.status_code == 403

    denies = [r for r in caplog.records if r.msg == "security_audit_deny"]
    assert denies
    rec = denies[-1]
    assert rec.payload["endpoint"] == "/v1/admin/presence"
    assert rec.payload["reason"] == "admin_required"
    assert rec.payload["subject"] == "cl-1"

    ctx = admin_auth_dep(
        req, authorization=None, x_api_key="k-admin", x_user_id=None, x_user_role=None
    )
    assert ctx.user_id == "admin-1"
