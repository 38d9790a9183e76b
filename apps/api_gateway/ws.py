"""
WebSocket канал присутствия.

Протокол:
- авторизация по тем же заголовкам, что и HTTP (Authorization / X-API-Key /
  X-User-Id + X-User-Role в AUTH_MODE=none)
- после accept сервер шлёт {"event_type":"connected", ...}
- клиент может слать {"event_type":"ping"} -> {"event_type":"pong"}
- события жизненного цикла публикуются сервисами в Redis
  (events:user:<id>, events:admin), gateway ретранслирует их во все
  подключения пользователя

На пользователя работает один ретранслятор: он стартует с первым
подключением и останавливается, когда подключений не осталось.
"""

from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from counseling_engine.common.errors import UnauthorizedError
from counseling_engine.common.ids import new_connection_id
from counseling_engine.common.logging import get_project_logger
from counseling_engine.common.security import AuthContext, require_auth
from counseling_engine.contracts.versions import is_supported_ws_version
from counseling_engine.contracts.ws_events import (
    ConnectedEvent,
    ErrorEvent,
    RelayedEvent,
    to_message,
)
from counseling_engine.domain.enums import Role
from counseling_engine.realtime.presence import PresenceRegistry
from counseling_engine.realtime.publisher import ADMIN_TOPIC, channel_for, user_topic
from counseling_engine.realtime.redis import redis_client

log = get_project_logger()

ws_router = APIRouter()


def _ws_client_ip(ws: WebSocket) -> str | None:
    return ws.client.host if ws.client else None


def _channels_for(ctx: AuthContext) -> list[str]:
    channels = [channel_for(user_topic(ctx.user_id))]
    if ctx.role == Role.admin:
        channels.append(channel_for(ADMIN_TOPIC))
    return channels


def _decode(data) -> RelayedEvent | None:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    try:
        raw = json.loads(data)
    except (TypeError, ValueError):
        return None
    if not isinstance(raw, dict) or not raw.get("event"):
        return None
    return RelayedEvent(
        event=str(raw["event"]),
        topic=str(raw.get("topic") or ""),
        payload=raw.get("payload") or {},
        ts=raw.get("ts"),
    )


def _open_pubsub(channels: list[str]):
    pubsub = redis_client().pubsub()
    pubsub.subscribe(*channels)
    return pubsub


async def _relay_pubsub(presence: PresenceRegistry, user_id: str, channels: list[str]) -> None:
    """
    Фоновая задача: читает pubsub и рассылает событие во все подключения user_id.
    redis_client() синхронный, поэтому подписка и чтение идут через asyncio.to_thread
    и не блокируют event loop.
    """
    pubsub = await asyncio.to_thread(_open_pubsub, channels)
    try:
        while presence.is_online(user_id):
            msg = await asyncio.to_thread(pubsub.get_message, True, 1.0)
            if not msg:
                await asyncio.sleep(0.01)
                continue
            if msg.get("type") != "message":
                continue
            event = _decode(msg.get("data"))
            if event is None:
                continue
            await presence.broadcast_to(user_id, to_message(event))
    finally:
        try:
            pubsub.unsubscribe(*channels)
            pubsub.close()
        except Exception as e:
            log.warning(
                "ws_pubsub_close_failed",
                extra={"payload": {"user_id": user_id, "err": str(e)[:300]}},
            )


def _relay_done(user_id: str):
    def _callback(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(
                "ws_relay_failed",
                extra={"payload": {"user_id": user_id, "err": str(exc)[:300]}},
            )

    return _callback


def _ensure_relay(ws: WebSocket, ctx: AuthContext) -> None:
    relays: dict[str, asyncio.Task] = ws.app.state.relays
    task = relays.get(ctx.user_id)
    if task is not None and not task.done():
        return
    task = asyncio.create_task(
        _relay_pubsub(ws.app.state.presence, ctx.user_id, _channels_for(ctx))
    )
    # Упавший relay пересоздаётся следующим подключением
    task.add_done_callback(_relay_done(ctx.user_id))
    relays[ctx.user_id] = task


def _release_relay(ws: WebSocket, user_id: str) -> None:
    if ws.app.state.presence.is_online(user_id):
        return
    task = ws.app.state.relays.pop(user_id, None)
    if task is not None:
        task.cancel()


async def _authorize_ws(ws: WebSocket) -> AuthContext | None:
    try:
        return require_auth(
            authorization=ws.headers.get("authorization"),
            x_api_key=ws.headers.get("x-api-key"),
            x_user_id=ws.headers.get("x-user-id"),
            x_user_role=ws.headers.get("x-user-role"),
        )
    except UnauthorizedError as e:
        log.warning(
            "security_audit_deny",
            extra={
                "payload": {
                    "endpoint": ws.url.path,
                    "method": "WS",
                    "status_code": status.WS_1008_POLICY_VIOLATION,
                    "reason": e.message,
                    "error_code": e.code,
                    "client_ip": _ws_client_ip(ws),
                }
            },
        )
        await ws.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.code)
        return None


@ws_router.websocket("/ws")
async def websocket_presence_endpoint(ws: WebSocket) -> None:
    ctx = await _authorize_ws(ws)
    if ctx is None:
        return

    schema = ws.query_params.get("schema_version")
    if not is_supported_ws_version(schema):
        log.warning(
            "ws_schema_version_rejected",
            extra={"payload": {"user_id": ctx.user_id, "schema_version": schema}},
        )
        await ws.close(code=status.WS_1008_POLICY_VIOLATION, reason="unsupported_schema_version")
        return

    await ws.accept()
    presence: PresenceRegistry = ws.app.state.presence
    connection_id = new_connection_id(ctx.user_id)
    presence.register(ctx.user_id, connection_id, ws.send_json, role=ctx.role.value)

    try:
        await ws.send_json(
            to_message(
                ConnectedEvent(
                    connection_id=connection_id, user_id=ctx.user_id, role=ctx.role.value
                )
            )
        )
        _ensure_relay(ws, ctx)

        while True:
            raw = await ws.receive_text()
            try:
                event = json.loads(raw)
            except ValueError:
                await ws.send_json(to_message(ErrorEvent(code="bad_json", message="Невалидный JSON")))
                continue
            if isinstance(event, dict) and event.get("event_type") == "ping":
                await ws.send_json({"event_type": "pong"})
                continue
            await ws.send_json(
                to_message(ErrorEvent(code="bad_event", message="Неизвестный event_type"))
            )
    except WebSocketDisconnect:
        pass
    except Exception as e:
        log.error(
            "ws_fatal",
            extra={"payload": {"user_id": ctx.user_id, "err": str(e)[:300]}},
        )
    finally:
        presence.unregister(connection_id)
        _release_relay(ws, ctx.user_id)
