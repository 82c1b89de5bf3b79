"""Room/message store contract and the in-memory implementation.

The store is a plain keyed container. Reconciliation rules live in the
session engine; the store only keeps timelines sorted by ``created_at`` with
arrival order as the tiebreak.
"""

from __future__ import annotations

import bisect
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol

from .models import ChatMessage, ChatRoom, MessageId

_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(message: ChatMessage) -> datetime:
    return message.created_at or _MIN_TIME


class ChatStore(Protocol):
    """Minimal state contract consumed by the session engine."""

    def list_rooms(self) -> list[ChatRoom]: ...

    def get_room(self, room_id: int) -> Optional[ChatRoom]: ...

    def put_room(self, room: ChatRoom) -> None: ...

    def replace_rooms(self, rooms: Iterable[ChatRoom]) -> None: ...

    def remove_room(self, room_id: int) -> Optional[ChatRoom]: ...

    def timeline(self, room_id: int) -> list[ChatMessage]: ...

    def timeline_room_ids(self) -> list[int]: ...

    def clear_timeline(self, room_id: int) -> None: ...

    def insert_message(self, message: ChatMessage) -> None: ...

    def replace_message(
        self, room_id: int, message_id: MessageId, message: ChatMessage
    ) -> bool: ...

    def remove_message(
        self, room_id: int, message_id: MessageId
    ) -> Optional[ChatMessage]: ...

    def typing_users(self, room_id: int) -> frozenset[int]: ...

    def set_typing(self, room_id: int, user_id: int, typing: bool) -> None: ...

    def clear_typing(self, room_id: Optional[int] = None) -> None: ...

    def online_users(self) -> frozenset[int]: ...

    def set_online(self, user_id: int, online: bool) -> None: ...

    def clear(self) -> None: ...


class InMemoryChatStore:
    def __init__(self) -> None:
        self._rooms: dict[int, ChatRoom] = {}
        self._timelines: dict[int, list[ChatMessage]] = {}
        self._typing: dict[int, set[int]] = {}
        self._online: set[int] = set()

    def list_rooms(self) -> list[ChatRoom]:
        return list(self._rooms.values())

    def get_room(self, room_id: int) -> Optional[ChatRoom]:
        return self._rooms.get(room_id)

    def put_room(self, room: ChatRoom) -> None:
        self._rooms[room.id] = room

    def replace_rooms(self, rooms: Iterable[ChatRoom]) -> None:
        self._rooms = {room.id: room for room in rooms}

    def remove_room(self, room_id: int) -> Optional[ChatRoom]:
        self._timelines.pop(room_id, None)
        self._typing.pop(room_id, None)
        return self._rooms.pop(room_id, None)

    def timeline(self, room_id: int) -> list[ChatMessage]:
        return list(self._timelines.get(room_id, ()))

    def timeline_room_ids(self) -> list[int]:
        return list(self._timelines.keys())

    def clear_timeline(self, room_id: int) -> None:
        self._timelines.pop(room_id, None)

    def insert_message(self, message: ChatMessage) -> None:
        timeline = self._timelines.setdefault(message.chat_room_id, [])
        index = bisect.bisect_right(timeline, _sort_key(message), key=_sort_key)
        timeline.insert(index, message)

    def replace_message(
        self, room_id: int, message_id: MessageId, message: ChatMessage
    ) -> bool:
        timeline = self._timelines.get(room_id)
        if not timeline:
            return False
        for index, existing in enumerate(timeline):
            if existing.id != message_id:
                continue
            if _sort_key(existing) == _sort_key(message):
                timeline[index] = message
            else:
                del timeline[index]
                self.insert_message(message)
            return True
        return False

    def remove_message(
        self, room_id: int, message_id: MessageId
    ) -> Optional[ChatMessage]:
        timeline = self._timelines.get(room_id)
        if not timeline:
            return None
        for index, existing in enumerate(timeline):
            if existing.id == message_id:
                return timeline.pop(index)
        return None

    def typing_users(self, room_id: int) -> frozenset[int]:
        return frozenset(self._typing.get(room_id, ()))

    def set_typing(self, room_id: int, user_id: int, typing: bool) -> None:
        if typing:
            self._typing.setdefault(room_id, set()).add(user_id)
            return
        users = self._typing.get(room_id)
        if users is None:
            return
        users.discard(user_id)
        if not users:
            del self._typing[room_id]

    def clear_typing(self, room_id: Optional[int] = None) -> None:
        if room_id is None:
            self._typing.clear()
        else:
            self._typing.pop(room_id, None)

    def online_users(self) -> frozenset[int]:
        return frozenset(self._online)

    def set_online(self, user_id: int, online: bool) -> None:
        if online:
            self._online.add(user_id)
        else:
            self._online.discard(user_id)

    def clear(self) -> None:
        self._rooms.clear()
        self._timelines.clear()
        self._typing.clear()
        self._online.clear()
