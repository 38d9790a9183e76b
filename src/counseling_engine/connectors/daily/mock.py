"""
Mock-провайдер видеокомнат для dev/тестов.

Назначение:
- гонять accept/token/complete без реального Daily.co
"""

from __future__ import annotations

from uuid import uuid4

from counseling_engine.connectors.base import RoomWindow, VideoRoom, VideoRoomProvider


class MockVideoProvider(VideoRoomProvider):
    def __init__(self) -> None:
        self.rooms: dict[str, VideoRoom] = {}
        self.deleted: list[str] = []

    def create_room(self, name: str, window: RoomWindow) -> VideoRoom:
        room = self.rooms.get(name)
        if room is None:
            room = VideoRoom(
                name=name,
                url=f"https://mock.daily.local/{name}",
                not_before=window.not_before,
                expires_at=window.expires_at,
            )
            self.rooms[name] = room
        return room

    def create_token(self, room_name: str, *, is_client: bool, window: RoomWindow) -> str:
        who = "client" if is_client else "counselor"
        return f"mock-{who}-{room_name}-{uuid4().hex[:12]}"

    def delete_room(self, room_name: str) -> None:
        self.rooms.pop(room_name, None)
        self.deleted.append(room_name)
