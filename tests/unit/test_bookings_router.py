from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from apps.api_gateway.main import app
from counseling_engine.domain.enums import MeetingStatus


def _h(user_id: str, role: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": role}


CLIENT = _h("cl-1", "client")
COUNSELOR = _h("co-1", "counselor")
ADMIN = _h("admin-1", "admin")


@pytest.fixture()
def client(seed) -> TestClient:
    seed.counselor()
    seed.client()
    return TestClient(app)


def _future_day(days: int = 3) -> date:
    return (datetime.now(UTC) + timedelta(days=days)).date()


def test_full_booking_flow_over_http(client, seed, side_effects) -> None:
    r = client.post(
        "/v1/bookings",
        json={"meeting_type": "virtual", "issue_description": "stress"},
        headers=CLIENT,
    )
    assert r.status_code == 201
    body = r.json()
    meeting_id = body["meeting_id"]
    assert body["status"] == "request_pending"
    assert body["counselor_id"] is None

    r = client.post(
        f"/v1/admin/bookings/{meeting_id}/assign", json={"counselor_id": "co-1"}, headers=ADMIN
    )
    assert r.status_code == 200
    assert r.json()["status"] == "counselor_assigned"

    day = _future_day()
    r = client.get(f"/v1/counselors/co-1/slots?date={day.isoformat()}", headers=CLIENT)
    assert r.status_code == 200
    assert "10:00" in r.json()["slots"]

    r = client.post(
        f"/v1/bookings/{meeting_id}/time",
        json={"meeting_date": day.isoformat(), "meeting_time": "10:00"},
        headers=CLIENT,
    )
    assert r.status_code == 200
    assert r.json()["status"] == "time_selected"

    r = client.get(f"/v1/counselors/co-1/slots?date={day.isoformat()}", headers=CLIENT)
    assert "10:00" not in r.json()["slots"]

    r = client.post(f"/v1/bookings/{meeting_id}/accept", headers=COUNSELOR)
    assert r.status_code == 200
    assert r.json()["status"] == "confirmed"
    assert r.json()["has_room"] is True

    # окно входа ещё не открыто
    r = client.get(f"/v1/bookings/{meeting_id}/token", headers=CLIENT)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "validation"

    r = client.get("/v1/bookings/active", headers=CLIENT)
    assert r.json()["meeting"]["meeting_id"] == meeting_id

    r = client.get("/v1/counselors/me/active-session", headers=COUNSELOR)
    assert r.json()["meeting"]["meeting_id"] == meeting_id

    r = client.post(f"/v1/bookings/{meeting_id}/complete", headers=COUNSELOR)
    assert r.status_code == 200
    assert r.json()["status"] == "completed"

    r = client.post(
        f"/v1/bookings/{meeting_id}/rating", json={"rating": 4, "feedback": "ok"}, headers=CLIENT
    )
    assert r.status_code == 200
    assert r.json()["average_rating"] == 4.0

    r = client.get(f"/v1/bookings/{meeting_id}/rating", headers=CLIENT)
    assert r.json() == {"is_rated": True, "rating": 4, "feedback": "ok"}

    r = client.get("/v1/counselors/co-1/statistics", headers=COUNSELOR)
    assert r.json()["completed_sessions"] == 1

    r = client.get("/v1/clients/cl-1/history", headers=CLIENT)
    items = r.json()["items"]
    assert [i["meeting_id"] for i in items] == [meeting_id]

    assert "new_booking" in side_effects.publisher.names("admin")
    assert "meeting_confirmed" in side_effects.publisher.names("user:cl-1")


def test_unknown_meeting_is_404(client) -> None:
    r = client.get("/v1/bookings/missing", headers=CLIENT)
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "not_found"


def test_invalid_transition_is_409(client, seed) -> None:
    seed.meeting(status=MeetingStatus.confirmed, meeting_date=_future_day(), meeting_time="10:00")
    r = client.post("/v1/bookings/m-1/cancel", json={"reason": "changed mind"}, headers=CLIENT)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "invalid_state"


def test_slot_conflict_is_409(client, seed) -> None:
    day = _future_day()
    seed.client("cl-2")
    seed.meeting("m-held", client_id="cl-2", status=MeetingStatus.confirmed, meeting_date=day, meeting_time="10:00")
    seed.meeting()

    r = client.post(
        "/v1/bookings/m-1/time",
        json={"meeting_date": day.isoformat(), "meeting_time": "10:00"},
        headers=CLIENT,
    )
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "conflict"


def test_token_after_meeting_is_410(client, seed) -> None:
    seed.meeting(
        status=MeetingStatus.confirmed,
        meeting_date=_future_day(-2),
        meeting_time="10:00",
        daily_room_name="meeting-m-1",
        daily_room_url="https://mock.daily.local/meeting-m-1",
    )
    r = client.get("/v1/bookings/m-1/token", headers=CLIENT)
    assert r.status_code == 410
    assert r.json()["detail"]["code"] == "expired"


def test_rating_rejects_non_integer(client, seed) -> None:
    seed.meeting(status=MeetingStatus.completed, meeting_date=_future_day(-1), meeting_time="10:00")
    r = client.post("/v1/bookings/m-1/rating", json={"rating": "5"}, headers=CLIENT)
    assert r.status_code == 422


def test_foreign_meeting_is_403(client, seed) -> None:
    seed.client("cl-2")
    seed.meeting()
    r = client.get("/v1/bookings/m-1", headers=_h("cl-2", "client"))
    assert r.status_code == 403


def test_missing_identity_is_401(client) -> None:
    r = client.get("/v1/bookings/active")
    assert r.status_code == 401


def test_statistics_of_other_counselor_forbidden(client, seed) -> None:
    seed.counselor("co-2")
    r = client.get("/v1/counselors/co-2/statistics", headers=COUNSELOR)
    assert r.status_code == 403


def test_presence_join_and_leave_over_http(client, seed) -> None:
    seed.meeting(status=MeetingStatus.confirmed, meeting_date=_future_day(), meeting_time="10:00")

    r = client.post("/v1/bookings/m-1/join", headers=CLIENT)
    assert r.json()["client_joined"] is True

    r = client.post("/v1/bookings/m-1/leave", headers=CLIENT)
    assert r.json()["grace_active"] is True
    assert r.json()["status"] == "confirmed"
