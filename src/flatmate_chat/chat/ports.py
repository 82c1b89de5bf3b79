"""Collaborator contracts the session engine depends on.

The engine never constructs its REST client or transport; callers inject
implementations of these protocols so the engine can run against fakes.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable

from .models import (
    ChatMessage,
    ChatRoom,
    HistoryPage,
    MessageId,
    MessageType,
    RoomsSnapshot,
)

StatusListener = Callable[[bool], None]


@runtime_checkable
class ChatRestApi(Protocol):
    """REST endpoints under ``/chat``. Failures raise ``FetchError``."""

    async def list_rooms(self) -> RoomsSnapshot:
        """GET /chat/rooms"""

    async def get_history(self, room_id: int, *, page: int, size: int) -> HistoryPage:
        """GET /chat/history/{chatRoomId}?page&size"""

    async def get_or_create_room(self, other_user_id: int) -> ChatRoom:
        """GET /chat/room/{otherUserId}"""

    async def send_message(
        self,
        *,
        receiver_id: int,
        body: str,
        message_type: MessageType = MessageType.TEXT,
        room_id: Optional[int] = None,
        client_ref: Optional[str] = None,
    ) -> ChatMessage:
        """POST /chat/send"""

    async def mark_read(self, room_id: int) -> None:
        """POST /chat/read/{chatRoomId}"""

    async def unread_count(self) -> int:
        """GET /chat/unread-count"""

    async def delete_message(self, message_id: MessageId) -> None:
        """DELETE /chat/message/{messageId}"""

    async def delete_room(self, room_id: int) -> None:
        """DELETE /chat/room/{chatRoomId}"""


@runtime_checkable
class ChatTransport(Protocol):
    """Outbound half of the streaming transport.

    ``publish`` raises ``PublishFailure`` when the connection is not up; the
    intent is dropped, never queued.
    """

    @property
    def connected(self) -> bool: ...

    async def publish(self, destination: str, payload: Mapping[str, Any]) -> None: ...

    def add_status_listener(self, listener: StatusListener) -> None: ...
