"""
Адаптер Daily.co.

Назначение:
- создание приватной комнаты на 2 участника с окном nbf/exp
- выдача анонимного токена (не владелец, видео выключено)
- удаление комнаты после завершения
"""

from __future__ import annotations

from typing import Any

import requests

from counseling_engine.common.config import get_settings
from counseling_engine.common.errors import ErrCode, ProviderError
from counseling_engine.common.logging import get_project_logger
from counseling_engine.connectors.base import RoomWindow, VideoRoom, VideoRoomProvider

log = get_project_logger()


def _epoch(value) -> int:
    return int(value.timestamp())


class DailyVideoProvider(VideoRoomProvider):
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_sec: int | None = None,
    ) -> None:
        s = get_settings()
        self.base_url = (base_url or s.daily_api_base or "").rstrip("/")
        self.api_key = (api_key or s.daily_api_key or "").strip()
        self.timeout_sec = int(timeout_sec if timeout_sec is not None else s.daily_timeout_sec)

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        allow_status: tuple[int, ...] = (),
    ) -> tuple[int, dict]:
        if not self.base_url or not self.api_key:
            raise ProviderError(
                ErrCode.VIDEO_PROVIDER_ERROR,
                "DAILY_API_BASE/DAILY_API_KEY не настроены",
            )

        url = f"{self.base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        try:
            resp = requests.request(
                method=method.upper(),
                url=url,
                json=payload,
                headers=headers,
                timeout=self.timeout_sec,
            )
            if resp.status_code not in allow_status:
                resp.raise_for_status()
        except requests.RequestException as e:
            raise ProviderError(
                ErrCode.VIDEO_PROVIDER_ERROR,
                "Ошибка обращения к Daily API",
                details={"err": str(e)[:300], "path": path},
            ) from e

        if not resp.content:
            return resp.status_code, {}
        try:
            data = resp.json()
            return resp.status_code, data if isinstance(data, dict) else {}
        except ValueError:
            return resp.status_code, {}

    @staticmethod
    def _room_from(data: dict, name: str) -> VideoRoom:
        url = str(data.get("url") or "")
        if not url:
            raise ProviderError(
                ErrCode.VIDEO_PROVIDER_ERROR,
                "Daily API не вернул url комнаты",
                details={"room": name},
            )
        return VideoRoom(name=str(data.get("name") or name), url=url, raw=data)

    def create_room(self, name: str, window: RoomWindow) -> VideoRoom:
        body = {
            "name": name,
            "privacy": "private",
            "properties": {
                "nbf": _epoch(window.not_before),
                "exp": _epoch(window.expires_at),
                "max_participants": 2,
                "enable_screenshare": False,
                "enable_chat": True,
                "enable_knocking": True,
                "start_video_off": True,
                "start_audio_off": False,
                "enable_recording": False,
                "eject_at_room_exp": True,
                "lang": "en",
            },
        }
        status, data = self._request("POST", "/rooms", payload=body, allow_status=(400,))
        if status == 400:
            # Комната с таким именем уже есть (повторный accept), берём существующую
            info = str(data.get("info") or data.get("error") or "")
            if "already exists" not in info:
                raise ProviderError(
                    ErrCode.VIDEO_PROVIDER_ERROR,
                    "Daily API отклонил создание комнаты",
                    details={"room": name, "info": info[:300]},
                )
            _, data = self._request("GET", f"/rooms/{name}")
            log.info("daily_room_reused", extra={"payload": {"room": name}})

        room = self._room_from(data, name)
        room.not_before = window.not_before
        room.expires_at = window.expires_at
        log.info("daily_room_created", extra={"payload": {"room": room.name}})
        return room

    def create_token(self, room_name: str, *, is_client: bool, window: RoomWindow) -> str:
        body = {
            "properties": {
                "room_name": room_name,
                "user_name": "Anonymous Client" if is_client else "Anonymous Counselor",
                "enable_screenshare": False,
                "start_video_off": True,
                "start_audio_off": False,
                "nbf": _epoch(window.not_before),
                "exp": _epoch(window.expires_at),
                "is_owner": False,
                "enable_recording": False,
                "start_cloud_recording": False,
            }
        }
        _, data = self._request("POST", "/meeting-tokens", payload=body)
        token = str(data.get("token") or "")
        if not token:
            raise ProviderError(
                ErrCode.VIDEO_PROVIDER_ERROR,
                "Daily API не вернул token",
                details={"room": room_name},
            )
        return token

    def delete_room(self, room_name: str) -> None:
        # 404: комнаты уже нет, это не ошибка
        self._request("DELETE", f"/rooms/{room_name}", allow_status=(404,))
        log.info("daily_room_deleted", extra={"payload": {"room": room_name}})
