"""Chat-domain models shared by the normalizer, store and session engine.

Everything here is an immutable value; the engine swaps whole values in the
store instead of mutating them, so snapshots handed to consumers never change
underneath them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from ..core.time_utils import format_timestamp

MessageId = Union[int, str]

TEMP_ID_PREFIX = "tmp-"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"
    LOCATION = "LOCATION"

    @classmethod
    def coerce(cls, value: Any) -> "MessageType":
        """Map any wire value onto the closed set; unknown values become TEXT."""
        if isinstance(value, MessageType):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                return cls.TEXT
        return cls.TEXT


def is_temp_id(message_id: Optional[MessageId]) -> bool:
    return isinstance(message_id, str) and message_id.startswith(TEMP_ID_PREFIX)


@dataclass(frozen=True)
class ChatMessage:
    id: MessageId
    chat_room_id: int
    sender_id: int
    receiver_id: Optional[int]
    body: str
    message_type: MessageType = MessageType.TEXT
    is_read: bool = False
    created_at: Optional[datetime] = None
    pending: bool = False
    send_failed: bool = False
    client_ref: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return not self.pending

    def to_payload(self) -> dict[str, Any]:
        """Wire representation; local-only flags are never included."""
        payload: dict[str, Any] = {
            "id": self.id,
            "chatRoomId": self.chat_room_id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "message": self.body,
            "messageType": self.message_type.value,
            "isRead": self.is_read,
            "createdAt": format_timestamp(self.created_at),
        }
        if self.client_ref:
            payload["clientMessageId"] = self.client_ref
        return payload


@dataclass(frozen=True)
class ChatRoom:
    id: int
    participant_a: int
    participant_b: int
    last_message: Optional[ChatMessage] = None
    unread_count: int = 0

    def other_participant(self, user_id: int) -> int:
        if self.participant_a == user_id:
            return self.participant_b
        return self.participant_a

    def has_participant(self, user_id: int) -> bool:
        return user_id in (self.participant_a, self.participant_b)


@dataclass(frozen=True)
class MessageEvent:
    kind: ClassVar[str] = "message"

    message: ChatMessage


@dataclass(frozen=True)
class TypingEvent:
    kind: ClassVar[str] = "typing"

    room_id: int
    user_id: int
    starting: bool


@dataclass(frozen=True)
class ReadReceiptEvent:
    kind: ClassVar[str] = "read-receipt"

    room_id: int
    message_id: Optional[MessageId]
    reader_id: Optional[int]


@dataclass(frozen=True)
class PresenceEvent:
    kind: ClassVar[str] = "presence"

    user_id: int
    online: bool


DomainEvent = Union[MessageEvent, TypingEvent, ReadReceiptEvent, PresenceEvent]


@dataclass(frozen=True)
class RawFrame:
    """A transport frame before normalization."""

    destination: Optional[str]
    body: Union[str, bytes, dict[str, Any], None]


@dataclass(frozen=True)
class RoomsSnapshot:
    rooms: tuple[ChatRoom, ...]
    total_unread: Optional[int] = None


@dataclass(frozen=True)
class HistoryPage:
    room_id: int
    page: int
    messages: tuple[ChatMessage, ...]
    total_pages: Optional[int] = None
    total_elements: Optional[int] = None

    @property
    def has_more(self) -> bool:
        if self.total_pages is None:
            return False
        return self.page + 1 < self.total_pages


@dataclass(frozen=True)
class ChatSessionView:
    """Immutable view of session state handed to consumers."""

    rooms: tuple[ChatRoom, ...]
    active_room_id: Optional[int]
    timeline: tuple[ChatMessage, ...]
    typing_user_ids: frozenset[int]
    online_user_ids: frozenset[int]
    connected: bool
    unread_total: int
    last_error: Optional[str] = None
    has_more_history: bool = False
    room_typing: dict[int, frozenset[int]] = field(default_factory=dict)
