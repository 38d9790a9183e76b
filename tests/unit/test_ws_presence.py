from __future__ import annotations

import asyncio
import json
import logging
import threading

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from apps.api_gateway import ws as ws_module
from apps.api_gateway.main import app
from counseling_engine.realtime.presence import PresenceRegistry


class _QueuedPubSub:
    def __init__(self, messages: list[dict]) -> None:
        self.messages = list(messages)
        self.subscribed: list[str] = []

    def subscribe(self, *channels: str) -> None:
        self.subscribed.extend(channels)

    def unsubscribe(self, *channels: str) -> None:
        return None

    def close(self) -> None:
        return None

    def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        _ = ignore_subscribe_messages, timeout
        return self.messages.pop(0) if self.messages else None


class _QueuedRedis:
    def __init__(self, messages: list[dict]) -> None:
        self._messages = messages
        self.pubsubs: list[_QueuedPubSub] = []

    def pubsub(self) -> _QueuedPubSub:
        ps = _QueuedPubSub(self._messages)
        self.pubsubs.append(ps)
        return ps


def _relayed(event: str, topic: str) -> dict:
    return {
        "type": "message",
        "data": json.dumps({"event": event, "topic": topic, "payload": {"meeting_id": "m-1"}}),
    }


def test_ws_requires_identity() -> None:
    client = TestClient(app)
    with pytest.raises(WebSocketDisconnect) as e, client.websocket_connect("/v1/ws"):
        pass
    assert e.value.code == 1008


def test_ws_rejects_unknown_schema_version() -> None:
    client = TestClient(app)
    headers = {"X-User-Id": "cl-1", "X-User-Role": "client"}
    with pytest.raises(WebSocketDisconnect) as e, client.websocket_connect(
        "/v1/ws?schema_version=v0", headers=headers
    ):
        pass
    assert e.value.code == 1008
    assert e.value.reason == "unsupported_schema_version"


def test_ws_relays_user_events_and_answers_ping(monkeypatch) -> None:
    fake = _QueuedRedis([_relayed("meeting_confirmed", "user:cl-1")])
    monkeypatch.setattr(ws_module, "redis_client", lambda: fake)

    client = TestClient(app)
    headers = {"X-User-Id": "cl-1", "X-User-Role": "client"}
    with client.websocket_connect("/v1/ws", headers=headers) as ws:
        connected = ws.receive_json()
        assert connected["event_type"] == "connected"
        assert connected["user_id"] == "cl-1"

        relayed = ws.receive_json()
        assert relayed["event_type"] == "event"
        assert relayed["event"] == "meeting_confirmed"
        assert relayed["payload"] == {"meeting_id": "m-1"}

        ws.send_text(json.dumps({"event_type": "ping"}))
        assert ws.receive_json() == {"event_type": "pong"}

        ws.send_text("not json")
        assert ws.receive_json()["code"] == "bad_json"

    assert fake.pubsubs[0].subscribed == ["events:user:cl-1"]


def test_ws_admin_subscribes_to_admin_topic(monkeypatch) -> None:
    fake = _QueuedRedis([_relayed("new_booking", "admin")])
    monkeypatch.setattr(ws_module, "redis_client", lambda: fake)

    client = TestClient(app)
    headers = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
    with client.websocket_connect("/v1/ws", headers=headers) as ws:
        ws.receive_json()
        assert ws.receive_json()["event"] == "new_booking"
        assert "admin-1" in app.state.presence.online_users()


def test_channels_for_roles() -> None:
    from counseling_engine.common.security import AuthContext
    from counseling_engine.domain.enums import Role

    assert ws_module._channels_for(AuthContext("co-1", Role.counselor, "none")) == [
        "events:user:co-1"
    ]
    assert ws_module._channels_for(AuthContext("a-1", Role.admin, "none")) == [
        "events:user:a-1",
        "events:admin",
    ]


def test_decode_ignores_garbage() -> None:
    assert ws_module._decode(b"{}") is None
    assert ws_module._decode("nope") is None
    assert ws_module._decode(b'{"event": "x", "topic": "admin"}').event == "x"


# =============================================================================
# PresenceRegistry
# =============================================================================
def test_presence_register_and_broadcast() -> None:
    registry = PresenceRegistry()
    inbox: list[dict] = []

    async def _send(message: dict) -> None:
        inbox.append(message)

    async def _boom(message: dict) -> None:
        raise RuntimeError("socket closed")

    registry.register("u-1", "c-1", _send, role="client")
    registry.register("u-1", "c-2", _send, role="client")
    registry.register("u-1", "c-3", _boom, role="client")

    delivered = asyncio.run(registry.broadcast_to("u-1", {"event": "x"}))

    assert delivered == 2
    assert len(inbox) == 2
    # упавшее подключение снято
    assert registry.connections_of("u-1") == {"c-1", "c-2"}


def test_presence_unregister_last_connection_goes_offline() -> None:
    registry = PresenceRegistry()

    async def _send(message: dict) -> None:
        return None

    registry.register("u-1", "c-1", _send)
    assert registry.is_online("u-1")
    registry.unregister("c-1")
    registry.unregister("c-1")
    assert not registry.is_online("u-1")
    assert registry.online_users() == []


class _BrokenRedis:
    def pubsub(self):
        raise ConnectionError("redis unreachable")


def test_relay_subscribes_off_event_loop_thread(monkeypatch) -> None:
    loop_thread = threading.get_ident()
    seen: list[int] = []

    class _TracingRedis(_QueuedRedis):
        def pubsub(self) -> _QueuedPubSub:
            seen.append(threading.get_ident())
            return super().pubsub()

    fake = _TracingRedis([])
    monkeypatch.setattr(ws_module, "redis_client", lambda: fake)

    # Пользователь не в сети: relay подписывается и сразу выходит
    asyncio.run(ws_module._relay_pubsub(PresenceRegistry(), "u-1", ["events:user:u-1"]))

    assert seen and seen[0] != loop_thread
    assert fake.pubsubs[0].subscribed == ["events:user:u-1"]


def test_relay_failure_is_logged(monkeypatch, caplog) -> None:
    monkeypatch.setattr(ws_module, "redis_client", lambda: _BrokenRedis())
    caplog.set_level(logging.INFO, logger="counseling-engine")

    async def _run() -> None:
        task = asyncio.create_task(
            ws_module._relay_pubsub(PresenceRegistry(), "u-1", ["events:user:u-1"])
        )
        task.add_done_callback(ws_module._relay_done("u-1"))
        with pytest.raises(ConnectionError):
            await task
        await asyncio.sleep(0)

    asyncio.run(_run())

    rec = next(r for r in caplog.records if r.msg == "ws_relay_failed")
    assert rec.payload == {"user_id": "u-1", "err": "redis unreachable"}


def test_cancelled_relay_is_not_logged_as_failure(caplog) -> None:
    caplog.set_level(logging.INFO, logger="counseling-engine")

    async def _run() -> None:
        task = asyncio.create_task(asyncio.sleep(10))
        task.add_done_callback(ws_module._relay_done("u-1"))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)

    asyncio.run(_run())

    assert not [r for r in caplog.records if r.msg == "ws_relay_failed"]
