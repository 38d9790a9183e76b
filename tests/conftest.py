from __future__ import annotations

import os
import tempfile

# Окружение тестов выставляется до импорта counseling_engine (Settings читаются при импорте)
_DB_DIR = tempfile.mkdtemp(prefix="counseling-tests-")
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_DSN"] = f"sqlite+pysqlite:///{_DB_DIR}/test.db"
os.environ["AUTH_MODE"] = "none"
os.environ["VIDEO_PROVIDER"] = "mock"
os.environ["NOTIFY_PROVIDER"] = "log"
os.environ["ADMIN_EMAIL"] = "admin@counseling.local"
os.environ["DAILY_RETRY_BACKOFF_MS"] = "0"

from datetime import UTC, date, datetime  # noqa: E402
from types import SimpleNamespace  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402

from counseling_engine.common.security import AuthContext  # noqa: E402
from counseling_engine.delivery.base import DeliveryResult, ok_result  # noqa: E402
from counseling_engine.domain.enums import MeetingStatus, MeetingType, Role  # noqa: E402
from counseling_engine.realtime.publisher import EventPublisher, set_publisher  # noqa: E402
from counseling_engine.services import notification_service, video_service  # noqa: E402
from counseling_engine.storage.db import db_session, engine  # noqa: E402
from counseling_engine.storage.models import Base, Client, Counselor, Meeting  # noqa: E402

# Понедельник, 08:00 UTC
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
TOMORROW = date(2026, 3, 3)


class FakePubSub:
    def __init__(self) -> None:
        self.channels: list[str] = []
        self.closed = False

    def subscribe(self, *channels: str) -> None:
        self.channels.extend(channels)

    def unsubscribe(self, *channels: str) -> None:
        self.channels = [c for c in self.channels if c not in channels]

    def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        _ = ignore_subscribe_messages, timeout
        return None

    def close(self) -> None:
        self.closed = True


class FakeRedis:
    def __init__(self) -> None:
        self.kv: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []
        self.pubsubs: list[FakePubSub] = []

    def get(self, key: str):
        return self.kv.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        _ = ex
        self.kv[key] = value
        return True

    def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    def pubsub(self) -> FakePubSub:
        ps = FakePubSub()
        self.pubsubs.append(ps)
        return ps


class RecordingPublisher(EventPublisher):
    def __init__(self) -> None:
        super().__init__(client_factory=lambda: None)
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def publish(self, topic: str, event: str, payload: dict[str, Any] | None = None) -> bool:
        self.events.append((topic, event, payload or {}))
        return True

    def names(self, topic: str | None = None) -> list[str]:
        return [e for t, e, _ in self.events if topic is None or t == topic]


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def notify(self, recipient: str, template: str, data: dict[str, Any]) -> DeliveryResult:
        self.sent.append((recipient, template, data))
        return ok_result("recording")

    def templates(self) -> list[str]:
        return [t for _, t, _ in self.sent]


@pytest.fixture(autouse=True)
def side_effects(monkeypatch):
    """
    Redis, публикатор и нотификатор подменяются в каждом тесте.
    """
    fake_redis = FakeRedis()
    publisher = RecordingPublisher()
    notifier = RecordingNotifier()

    monkeypatch.setattr(video_service, "redis_client", lambda: fake_redis)
    monkeypatch.setattr(video_service, "_CIRCUIT_BREAKER", None)
    monkeypatch.setattr(video_service, "_MOCK_PROVIDER", None)
    set_publisher(publisher)
    notification_service.set_notifier(notifier)
    try:
        yield SimpleNamespace(redis=fake_redis, publisher=publisher, notifier=notifier)
    finally:
        set_publisher(None)
        notification_service.set_notifier(None)


@pytest.fixture()
def db():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine


class Seed:
    def counselor(self, counselor_id: str = "co-1", **kw) -> str:
        values = {
            "id": counselor_id,
            "email": f"{counselor_id}@counseling.local",
            "work_start": "09:00",
            "work_end": "17:00",
            "timezone": "UTC",
            "unavailable_dates": [],
        }
        values.update(kw)
        with db_session() as s:
            s.add(Counselor(**values))
        return counselor_id

    def client(self, client_id: str = "cl-1", **kw) -> str:
        values = {"id": client_id, "email": f"{client_id}@counseling.local"}
        values.update(kw)
        with db_session() as s:
            s.add(Client(**values))
        return client_id

    def meeting(self, meeting_id: str = "m-1", **kw) -> str:
        values = {
            "id": meeting_id,
            "client_id": "cl-1",
            "counselor_id": "co-1",
            "meeting_type": MeetingType.virtual,
            "issue_description": "anxiety",
            "meeting_duration": 45,
            "status": MeetingStatus.counselor_assigned,
            "created_at": NOW,
            "updated_at": NOW,
        }
        values.update(kw)
        with db_session() as s:
            s.add(Meeting(**values))
        return meeting_id

    @staticmethod
    def get(meeting_id: str) -> Meeting:
        with db_session() as s:
            return s.get(Meeting, meeting_id)

    @staticmethod
    def get_counselor(counselor_id: str = "co-1") -> Counselor:
        with db_session() as s:
            return s.get(Counselor, counselor_id)

    @staticmethod
    def get_client(client_id: str = "cl-1") -> Client:
        with db_session() as s:
            return s.get(Client, client_id)


@pytest.fixture()
def seed(db) -> Seed:
    return Seed()


def as_client(user_id: str = "cl-1") -> AuthContext:
    return AuthContext(user_id=user_id, role=Role.client, auth_type="none")


def as_counselor(user_id: str = "co-1") -> AuthContext:
    return AuthContext(user_id=user_id, role=Role.counselor, auth_type="none")


def as_admin(user_id: str = "admin-1") -> AuthContext:
    return AuthContext(user_id=user_id, role=Role.admin, auth_type="none")


@pytest.fixture()
def principals() -> SimpleNamespace:
    return SimpleNamespace(client=as_client, counselor=as_counselor, admin=as_admin)


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def tomorrow() -> date:
    return TOMORROW
