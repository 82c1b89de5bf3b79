"""Convert raw transport frames into typed domain events.

This is the only module that inspects wire payloads. Upstream services do not
agree on field names across message types (``chatRoomId`` vs ``roomId``,
``message`` vs ``content`` and so on), so every accessor below accepts the
known aliases and produces a single canonical field.

Both ``parse_frame`` and ``normalize`` are pure: no logging, no clock reads.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional, Sequence

from ..core.coercion import coerce_bool, coerce_id, coerce_int, coerce_str
from ..core.time_utils import parse_timestamp
from .errors import NormalizeSkip
from .models import (
    ChatMessage,
    ChatRoom,
    DomainEvent,
    HistoryPage,
    MessageEvent,
    MessageType,
    PresenceEvent,
    RawFrame,
    ReadReceiptEvent,
    RoomsSnapshot,
    TypingEvent,
)

ROOM_ID_KEYS = ("chatRoomId", "roomId", "chat_room_id", "room_id")
BODY_KEYS = ("message", "content", "body", "text")
SENDER_KEYS = ("senderId", "sender_id", "userId", "user_id")
RECEIVER_KEYS = ("receiverId", "receiver_id", "recipientId")
CREATED_AT_KEYS = ("createdAt", "timestamp", "created_at", "sentAt")
READER_KEYS = ("readBy", "readerId", "reader_id", "senderId", "userId")
CLIENT_REF_KEYS = ("clientMessageId", "tempId", "client_message_id")

_ENVELOPE_KINDS = {
    "MESSAGE": "message",
    "CHAT": "message",
    "TYPING": "typing",
    "STOP_TYPING": "typing",
    "READ_RECEIPT": "read-receipt",
    "READ": "read-receipt",
    "USER_PRESENCE": "presence",
    "PRESENCE": "presence",
}

_DESTINATION_KINDS = (
    ("/queue/messages", "message"),
    ("/queue/read-receipts", "read-receipt"),
    ("/topic/typing", "typing"),
    ("/topic/presence", "presence"),
)


def normalize(frame: RawFrame) -> Optional[DomainEvent]:
    """Return the domain event carried by ``frame`` or ``None`` if unrecognized."""
    try:
        return parse_frame(frame)
    except NormalizeSkip:
        return None


def parse_frame(frame: RawFrame) -> DomainEvent:
    payload = _decode_body(frame)
    kind: Optional[str] = None
    data: Mapping[str, Any] = payload

    envelope_type = payload.get("type")
    inner = payload.get("data")
    if isinstance(inner, Mapping) and isinstance(envelope_type, str):
        kind = _ENVELOPE_KINDS.get(envelope_type.strip().upper())
        data = inner
        if kind is None:
            raise NormalizeSkip(
                f"unknown envelope type {envelope_type!r}",
                destination=frame.destination,
            )
    if kind is None:
        kind = _kind_for_destination(frame.destination)
    if kind is None:
        raise NormalizeSkip("no event kind for frame", destination=frame.destination)

    if kind == "message":
        return MessageEvent(message=message_from_payload(data))
    if kind == "typing":
        return _typing_from_payload(data, envelope_type=envelope_type)
    if kind == "read-receipt":
        return _read_receipt_from_payload(data)
    return _presence_from_payload(data)


def message_from_payload(data: Mapping[str, Any]) -> ChatMessage:
    message_id = coerce_id(data.get("id"))
    if message_id is None:
        raise NormalizeSkip("message payload missing id")
    room_id = coerce_int(_first(data, ROOM_ID_KEYS))
    if room_id is None:
        raise NormalizeSkip("message payload missing room id")
    sender_id = coerce_int(_first(data, SENDER_KEYS))
    if sender_id is None:
        sender_id = _nested_id(data.get("sender"))
    if sender_id is None:
        raise NormalizeSkip("message payload missing sender id")
    receiver_id = coerce_int(_first(data, RECEIVER_KEYS))
    if receiver_id is None:
        receiver_id = _nested_id(data.get("receiver"))
    body = coerce_str(_first(data, BODY_KEYS), "") or ""
    return ChatMessage(
        id=message_id,
        chat_room_id=room_id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        body=body,
        message_type=MessageType.coerce(data.get("messageType")),
        is_read=bool(coerce_bool(data.get("isRead", data.get("read")), False)),
        created_at=parse_timestamp(_first(data, CREATED_AT_KEYS)),
        client_ref=coerce_str(_first(data, CLIENT_REF_KEYS)),
    )


def room_from_payload(data: Mapping[str, Any]) -> ChatRoom:
    room_id = coerce_int(data.get("id"))
    if room_id is None:
        raise NormalizeSkip("room payload missing id")
    participant_a = coerce_int(data.get("user1Id", data.get("participantA")))
    if participant_a is None:
        participant_a = _nested_id(data.get("user1"))
    participant_b = coerce_int(data.get("user2Id", data.get("participantB")))
    if participant_b is None:
        participant_b = _nested_id(data.get("user2"))
    participants = data.get("participants")
    if isinstance(participants, Sequence) and not isinstance(participants, str):
        for item in participants:
            candidate = _nested_id(item)
            if candidate is None:
                continue
            if participant_a is None:
                participant_a = candidate
            elif participant_b is None and candidate != participant_a:
                participant_b = candidate
    if participant_b is None:
        participant_b = coerce_int(data.get("receiverId"))
    if participant_b is None:
        participant_b = _nested_id(data.get("otherUser"))
    if participant_a is None or participant_b is None:
        raise NormalizeSkip(f"room {room_id} payload missing participants")

    last_message = None
    last_raw = data.get("lastMessage")
    if isinstance(last_raw, Mapping):
        try:
            last_message = message_from_payload({"chatRoomId": room_id, **last_raw})
        except NormalizeSkip:
            last_message = None
    unread = coerce_int(data.get("unreadCount"), 0) or 0
    return ChatRoom(
        id=room_id,
        participant_a=participant_a,
        participant_b=participant_b,
        last_message=last_message,
        unread_count=max(unread, 0),
    )


def rooms_snapshot_from_payload(payload: Any) -> RoomsSnapshot:
    """Accepts ``{chatRooms, totalUnreadCount}``, ``{data: [...]}`` or a bare list."""
    total_unread = None
    items: Any = payload
    if isinstance(payload, Mapping):
        total_unread = coerce_int(payload.get("totalUnreadCount"))
        items = payload.get("chatRooms", payload.get("data", payload.get("rooms")))
    if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
        raise NormalizeSkip("rooms payload is not a list")
    rooms: list[ChatRoom] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        try:
            rooms.append(room_from_payload(item))
        except NormalizeSkip:
            continue
    return RoomsSnapshot(rooms=tuple(rooms), total_unread=total_unread)


def history_page_from_payload(payload: Any, *, room_id: int, page: int) -> HistoryPage:
    items: Any = payload
    total_pages = None
    total_elements = None
    current_page = page
    if isinstance(payload, Mapping):
        items = payload.get("messages", payload.get("content", payload.get("data")))
        total_pages = coerce_int(payload.get("totalPages"))
        total_elements = coerce_int(payload.get("totalElements"))
        parsed_page = coerce_int(payload.get("currentPage"))
        if parsed_page is not None:
            current_page = parsed_page
    if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
        raise NormalizeSkip("history payload is not a list")
    messages: list[ChatMessage] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        try:
            messages.append(message_from_payload({"chatRoomId": room_id, **item}))
        except NormalizeSkip:
            continue
    return HistoryPage(
        room_id=room_id,
        page=current_page,
        messages=tuple(messages),
        total_pages=total_pages,
        total_elements=total_elements,
    )


def _typing_from_payload(
    data: Mapping[str, Any], *, envelope_type: Any = None
) -> TypingEvent:
    room_id = coerce_int(_first(data, ROOM_ID_KEYS))
    user_id = coerce_int(_first(data, ("userId", "senderId", "user_id", "sender_id")))
    if room_id is None or user_id is None:
        raise NormalizeSkip("typing payload missing room or user id")
    starting = coerce_bool(data.get("isTyping"))
    if starting is None:
        marker = data.get("type", envelope_type)
        if isinstance(marker, str) and marker.strip().upper() in {
            "TYPING",
            "STOP_TYPING",
        }:
            starting = marker.strip().upper() == "TYPING"
    if starting is None:
        raise NormalizeSkip("typing payload missing start/stop flag")
    return TypingEvent(room_id=room_id, user_id=user_id, starting=starting)


def _read_receipt_from_payload(data: Mapping[str, Any]) -> ReadReceiptEvent:
    room_id = coerce_int(_first(data, ROOM_ID_KEYS))
    if room_id is None:
        raise NormalizeSkip("read receipt missing room id")
    return ReadReceiptEvent(
        room_id=room_id,
        message_id=coerce_id(data.get("messageId", data.get("message_id"))),
        reader_id=coerce_int(_first(data, READER_KEYS)),
    )


def _presence_from_payload(data: Mapping[str, Any]) -> PresenceEvent:
    user_id = coerce_int(_first(data, ("userId", "user_id", "senderId", "id")))
    if user_id is None:
        raise NormalizeSkip("presence payload missing user id")
    online = coerce_bool(data.get("isOnline", data.get("online")))
    if online is None:
        status = data.get("status")
        if isinstance(status, str):
            online = status.strip().upper() == "ONLINE"
    if online is None:
        raise NormalizeSkip("presence payload missing online flag")
    return PresenceEvent(user_id=user_id, online=online)


def _decode_body(frame: RawFrame) -> Mapping[str, Any]:
    body = frame.body
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise NormalizeSkip(
                "frame body is not utf-8", destination=frame.destination
            ) from exc
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except (ValueError, RecursionError) as exc:
            raise NormalizeSkip(
                "frame body is not JSON", destination=frame.destination
            ) from exc
    if not isinstance(body, Mapping):
        raise NormalizeSkip(
            "frame body must be a JSON object", destination=frame.destination
        )
    return body


def _kind_for_destination(destination: Optional[str]) -> Optional[str]:
    if not destination:
        return None
    for suffix, kind in _DESTINATION_KINDS:
        if destination.endswith(suffix):
            return kind
    return None


def _first(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _nested_id(value: Any) -> Optional[int]:
    if isinstance(value, Mapping):
        return coerce_int(value.get("id"))
    return coerce_int(value)
