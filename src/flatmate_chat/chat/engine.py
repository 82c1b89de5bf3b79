"""Chat session engine: reconciles live events, REST snapshots and local intents.

The engine owns the store. It runs on a single asyncio loop and mutates state
only in synchronous sections between awaits, so operations are serialized
without locks. ``ingest`` contains no awaits at all.

Deduplication: an incoming message is the same logical message as a timeline
entry when the ids match (or the server echoed our temporary id back), or when
sender and body match and the timestamps are within the dedup window. The
loose rule reconciles server echoes of optimistic sends when the server does
not return the temporary id. Exactly one copy survives and a confirmed copy
always replaces a pending one.
"""

from __future__ import annotations

import itertools
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from ..core.config import DEFAULT_DEDUP_WINDOW_SECONDS, DEFAULT_HISTORY_PAGE_SIZE
from ..core.logging_utils import log_event
from ..core.time_utils import format_timestamp, now_utc
from .constants import (
    INACTIVE_TIMELINE_LIMIT,
    READ_DESTINATION,
    SEEN_MESSAGE_IDS_LIMIT,
    SEND_DESTINATION,
    TYPING_DESTINATION,
)
from .errors import (
    ChatError,
    FetchError,
    NormalizeSkip,
    PublishFailure,
    ReconciliationAnomaly,
)
from .models import (
    TEMP_ID_PREFIX,
    ChatMessage,
    ChatRoom,
    ChatSessionView,
    DomainEvent,
    MessageEvent,
    MessageId,
    MessageType,
    PresenceEvent,
    RawFrame,
    ReadReceiptEvent,
    TypingEvent,
    is_temp_id,
)
from .normalizer import parse_frame
from .ports import ChatRestApi, ChatTransport
from .store import ChatStore, InMemoryChatStore

SessionListener = Callable[[ChatSessionView], None]


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a REST-backed engine operation."""

    ok: bool
    error: Optional[ChatError] = None
    stale: bool = False
    value: Any = None


def _default_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def _is_newer(candidate: Optional[ChatMessage], current: Optional[ChatMessage]) -> bool:
    if candidate is None:
        return False
    if current is None:
        return True
    if candidate.created_at is None or current.created_at is None:
        return False
    return candidate.created_at > current.created_at


class ChatSessionEngine:
    def __init__(
        self,
        *,
        user_id: int,
        rest: ChatRestApi,
        transport: ChatTransport,
        store: Optional[ChatStore] = None,
        history_page_size: int = DEFAULT_HISTORY_PAGE_SIZE,
        dedup_window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
        temp_id_factory: Optional[Callable[[], str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._user_id = user_id
        self._rest = rest
        self._transport = transport
        self._store: ChatStore = store if store is not None else InMemoryChatStore()
        self._page_size = max(int(history_page_size), 1)
        self._dedup_window = timedelta(seconds=max(dedup_window_seconds, 0.0))
        self._clock = clock or now_utc
        self._temp_id_factory = temp_id_factory or _default_temp_id
        self._logger = logger or logging.getLogger(__name__)

        self._active_room_id: Optional[int] = None
        self._selection_epoch = 0
        self._versions = itertools.count(1)
        self._applied_rooms_version = 0
        # room id -> version of the latest local room adjustment
        self._local_marks: dict[int, int] = {}
        self._seen: dict[int, OrderedDict[MessageId, None]] = {}
        self._has_more: dict[int, bool] = {}
        self._server_unread_total: Optional[int] = None
        self._connected = False
        self._last_error: Optional[ChatError] = None
        self._listeners: list[SessionListener] = []

    # -- read side ---------------------------------------------------------

    @property
    def user_id(self) -> int:
        return self._user_id

    @property
    def active_room_id(self) -> Optional[int]:
        return self._active_room_id

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def last_error(self) -> Optional[ChatError]:
        return self._last_error

    @property
    def server_unread_total(self) -> Optional[int]:
        return self._server_unread_total

    def rooms(self) -> list[ChatRoom]:
        return self._store.list_rooms()

    def room(self, room_id: int) -> Optional[ChatRoom]:
        return self._store.get_room(room_id)

    def timeline(self, room_id: Optional[int] = None) -> tuple[ChatMessage, ...]:
        target = self._active_room_id if room_id is None else room_id
        if target is None:
            return ()
        return tuple(self._store.timeline(target))

    def typing_users(self, room_id: int) -> frozenset[int]:
        return self._store.typing_users(room_id)

    def online_users(self) -> frozenset[int]:
        return self._store.online_users()

    def unread_total(self) -> int:
        return sum(room.unread_count for room in self._store.list_rooms())

    def has_more_history(self, room_id: int) -> bool:
        return self._has_more.get(room_id, False)

    def snapshot(self) -> ChatSessionView:
        rooms = tuple(self._store.list_rooms())
        active = self._active_room_id
        return ChatSessionView(
            rooms=rooms,
            active_room_id=active,
            timeline=self.timeline(),
            typing_user_ids=(
                self._store.typing_users(active) if active is not None else frozenset()
            ),
            online_user_ids=self._store.online_users(),
            connected=self._connected,
            unread_total=sum(room.unread_count for room in rooms),
            last_error=(
                (self._last_error.user_message or str(self._last_error))
                if self._last_error is not None
                else None
            ),
            has_more_history=(
                self._has_more.get(active, False) if active is not None else False
            ),
            room_typing={
                room.id: typing
                for room in rooms
                if (typing := self._store.typing_users(room.id))
            },
        )

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear_error(self) -> None:
        self._last_error = None
        self._notify()

    # -- REST-backed operations -------------------------------------------

    async def load_rooms(self) -> OperationResult:
        issued = next(self._versions)
        try:
            snapshot = await self._rest.list_rooms()
        except FetchError as exc:
            return self._fail("chat.rooms.load_failed", exc)

        if issued < self._applied_rooms_version:
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.rooms.stale_snapshot_discarded",
                issued=issued,
                applied=self._applied_rooms_version,
            )
            return OperationResult(ok=True, stale=True)

        merged: dict[int, ChatRoom] = {}
        for room in snapshot.rooms:
            local = self._store.get_room(room.id)
            if local is not None:
                if self._local_marks.get(room.id, 0) > issued:
                    room = replace(room, unread_count=local.unread_count)
                if _is_newer(local.last_message, room.last_message):
                    room = replace(room, last_message=local.last_message)
            merged[room.id] = room
        for local in self._store.list_rooms():
            if local.id not in merged and self._local_marks.get(local.id, 0) > issued:
                merged[local.id] = local

        self._store.replace_rooms(merged.values())
        for room_id in self._store.timeline_room_ids():
            if room_id not in merged:
                self._forget_room(room_id)
        if self._active_room_id is not None and self._active_room_id not in merged:
            self._active_room_id = None
            self._selection_epoch += 1

        self._applied_rooms_version = issued
        self._local_marks = {
            room_id: version
            for room_id, version in self._local_marks.items()
            if version > issued
        }
        if snapshot.total_unread is not None:
            self._server_unread_total = snapshot.total_unread
        self._last_error = None
        log_event(
            self._logger,
            logging.INFO,
            "chat.rooms.loaded",
            count=len(merged),
            version=issued,
        )
        self._notify()
        return OperationResult(ok=True)

    async def select_room(self, room_id: int) -> OperationResult:
        room = self._store.get_room(room_id)
        if room is None:
            return self._fail(
                "chat.room.select_unknown",
                ChatError(f"Unknown chat room {room_id}"),
                room_id=room_id,
            )
        previous = self._active_room_id
        if previous is not None and previous != room_id:
            self._store.clear_timeline(previous)
            self._store.clear_typing(previous)
            self._has_more.pop(previous, None)
        self._store.clear_timeline(room_id)
        self._has_more.pop(room_id, None)
        self._active_room_id = room_id
        self._selection_epoch += 1
        self._set_unread(room_id, 0)
        self._notify()

        read = await self.mark_read(room_id)
        history = await self.load_history(room_id, 0)
        if read.ok or not history.ok or history.stale:
            return history
        # load_history clears last_error on success.
        self._last_error = read.error
        self._notify()
        return OperationResult(ok=False, error=read.error, value=history.value)

    async def open_conversation(self, other_user_id: int) -> OperationResult:
        try:
            room = await self._rest.get_or_create_room(other_user_id)
        except FetchError as exc:
            return self._fail(
                "chat.room.open_failed", exc, other_user_id=other_user_id
            )
        local = self._store.get_room(room.id)
        if local is not None and _is_newer(local.last_message, room.last_message):
            room = replace(room, last_message=local.last_message)
        self._store.put_room(room)
        self._local_marks[room.id] = next(self._versions)
        return await self.select_room(room.id)

    async def load_history(self, room_id: int, page: int = 0) -> OperationResult:
        if page < 0:
            return self._fail(
                "chat.history.invalid_page",
                ChatError(f"History page must be >= 0, got {page}"),
                room_id=room_id,
            )
        if room_id != self._active_room_id:
            return OperationResult(ok=False, stale=True)
        epoch = self._selection_epoch
        try:
            history = await self._rest.get_history(
                room_id, page=page, size=self._page_size
            )
        except FetchError as exc:
            if self._is_stale(room_id, epoch):
                return OperationResult(ok=False, error=exc, stale=True)
            return self._fail("chat.history.load_failed", exc, room_id=room_id)

        if self._is_stale(room_id, epoch):
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.history.stale_discarded",
                room_id=room_id,
                page=page,
                active_room_id=self._active_room_id,
            )
            return OperationResult(ok=True, stale=True)

        if page == 0:
            carried = self._store.timeline(room_id)
            self._store.clear_timeline(room_id)
            for message in history.messages:
                self._merge_by_id(room_id, message)
            for message in carried:
                self._reconcile(room_id, message)
        else:
            for message in history.messages:
                self._merge_by_id(room_id, message)

        timeline = self._store.timeline(room_id)
        room = self._store.get_room(room_id)
        if room is not None and timeline:
            latest = timeline[-1]
            if room.last_message is None or not _is_newer(room.last_message, latest):
                self._store.put_room(replace(room, last_message=latest))
        self._has_more[room_id] = history.has_more
        self._last_error = None
        log_event(
            self._logger,
            logging.DEBUG,
            "chat.history.loaded",
            room_id=room_id,
            page=page,
            count=len(history.messages),
            has_more=history.has_more,
        )
        self._notify()
        return OperationResult(ok=True, value=history)

    async def mark_read(self, room_id: int) -> OperationResult:
        room = self._store.get_room(room_id)
        if room is None:
            return self._fail(
                "chat.read.unknown_room",
                ChatError(f"Unknown chat room {room_id}"),
                room_id=room_id,
            )
        self._set_unread(room_id, 0)
        for message in self._store.timeline(room_id):
            if message.sender_id != self._user_id and not message.is_read:
                self._store.replace_message(
                    room_id, message.id, replace(message, is_read=True)
                )
        self._notify()

        payload = {
            "chatRoomId": room_id,
            "readBy": self._user_id,
            "readAt": format_timestamp(self._clock()),
        }
        try:
            await self._transport.publish(READ_DESTINATION, payload)
            return OperationResult(ok=True)
        except PublishFailure as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.read.publish_dropped",
                room_id=room_id,
                exc=exc,
            )
        try:
            await self._rest.mark_read(room_id)
        except FetchError as exc:
            return self._fail("chat.read.persist_failed", exc, room_id=room_id)
        return OperationResult(ok=True)

    async def refresh_unread_total(self) -> OperationResult:
        try:
            total = await self._rest.unread_count()
        except FetchError as exc:
            return self._fail("chat.unread.refresh_failed", exc)
        self._server_unread_total = total
        self._notify()
        return OperationResult(ok=True, value=total)

    async def delete_message(self, message_id: MessageId) -> OperationResult:
        located = self._locate(message_id)
        if located is not None:
            room_id, _message = located
            self._store.remove_message(room_id, message_id)
            room = self._store.get_room(room_id)
            if (
                room is not None
                and room.last_message is not None
                and room.last_message.id == message_id
            ):
                remaining = self._store.timeline(room_id)
                self._store.put_room(
                    replace(room, last_message=remaining[-1] if remaining else None)
                )
            self._notify()
        if is_temp_id(message_id):
            return OperationResult(ok=True)
        try:
            await self._rest.delete_message(message_id)
        except FetchError as exc:
            return self._fail("chat.message.delete_failed", exc, message_id=message_id)
        return OperationResult(ok=True)

    async def delete_room(self, room_id: int) -> OperationResult:
        self._store.remove_room(room_id)
        self._forget_room(room_id)
        self._local_marks.pop(room_id, None)
        if self._active_room_id == room_id:
            self._active_room_id = None
            self._selection_epoch += 1
        self._notify()
        try:
            await self._rest.delete_room(room_id)
        except FetchError as exc:
            return self._fail("chat.room.delete_failed", exc, room_id=room_id)
        return OperationResult(ok=True)

    # -- transport-backed intents ------------------------------------------

    async def send_message(
        self,
        room_id: int,
        body: str,
        message_type: MessageType | str = MessageType.TEXT,
    ) -> Optional[ChatMessage]:
        room = self._store.get_room(room_id)
        if room is None:
            self._fail(
                "chat.send.unknown_room",
                ChatError(f"Unknown chat room {room_id}"),
                room_id=room_id,
            )
            return None
        message = ChatMessage(
            id=self._temp_id_factory(),
            chat_room_id=room_id,
            sender_id=self._user_id,
            receiver_id=room.other_participant(self._user_id),
            body=body,
            message_type=MessageType.coerce(message_type),
            created_at=self._clock(),
            pending=True,
        )
        self._store.insert_message(message)
        self._store.put_room(replace(room, last_message=message))
        self._notify()
        return await self._publish_send(message)

    async def retry_send(self, message_id: MessageId) -> Optional[ChatMessage]:
        """Resend a failed optimistic message. Only ever triggered by the user."""
        located = self._locate(message_id)
        if located is None or not located[1].send_failed:
            return None
        room_id, failed = located
        retrying = replace(failed, send_failed=False)
        self._replace_tracked(room_id, failed.id, retrying)
        self._notify()
        if self._transport.connected:
            return await self._publish_send(retrying)

        if retrying.receiver_id is None:
            return self._mark_send_failed(
                retrying, ChatError(f"Message {message_id} has no receiver")
            )
        try:
            confirmed = await self._rest.send_message(
                receiver_id=retrying.receiver_id,
                body=retrying.body,
                message_type=retrying.message_type,
                room_id=room_id,
                client_ref=str(retrying.id),
            )
        except FetchError as exc:
            return self._mark_send_failed(retrying, exc)
        if confirmed.client_ref is None:
            confirmed = replace(confirmed, client_ref=str(retrying.id))
        self.ingest(MessageEvent(message=confirmed))
        return confirmed

    async def start_typing(self, room_id: int) -> bool:
        return await self._publish_typing(room_id, True)

    async def stop_typing(self, room_id: int) -> bool:
        return await self._publish_typing(room_id, False)

    # -- inbound -----------------------------------------------------------

    def handle_frame(self, frame: RawFrame) -> bool:
        try:
            event = parse_frame(frame)
        except NormalizeSkip as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.frame.skipped",
                destination=frame.destination,
                reason=exc.reason,
            )
            return False
        return self.ingest(event)

    def ingest(self, event: DomainEvent) -> bool:
        """Apply one normalized event. Returns whether visible state changed."""
        try:
            if isinstance(event, MessageEvent):
                changed = self._ingest_message(event.message)
            elif isinstance(event, TypingEvent):
                changed = self._ingest_typing(event)
            elif isinstance(event, ReadReceiptEvent):
                changed = self._ingest_read_receipt(event)
            elif isinstance(event, PresenceEvent):
                self._store.set_online(event.user_id, event.online)
                changed = True
            else:
                return False
        except ReconciliationAnomaly as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.ingest.anomaly_dropped",
                kind=getattr(event, "kind", None),
                reason=str(exc),
            )
            return False
        if changed:
            self._notify()
        return changed

    def set_connection_status(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        if not connected:
            self._store.clear_typing()
        log_event(
            self._logger,
            logging.INFO,
            "chat.connection.status",
            connected=connected,
        )
        self._notify()

    def reset(self) -> None:
        self._store.clear()
        self._active_room_id = None
        self._selection_epoch += 1
        self._local_marks.clear()
        self._seen.clear()
        self._has_more.clear()
        self._server_unread_total = None
        self._last_error = None
        self._notify()

    # -- reconciliation internals ------------------------------------------

    def _ingest_message(self, message: ChatMessage) -> bool:
        room = self._store.get_room(message.chat_room_id)
        if room is None:
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.ingest.unknown_room",
                room_id=message.chat_room_id,
                message_id=message.id,
            )
            return False
        if self._reconcile(room.id, message) is not None:
            return True
        self._trim_inactive_timeline(room.id)

        stored = self._timeline_entry(room.id, message.id)
        room = self._store.get_room(room.id) or room
        if stored is not None and (
            room.last_message is None or not _is_newer(room.last_message, stored)
        ):
            room = replace(room, last_message=stored)
        counts_as_unread = (
            room.id != self._active_room_id
            and message.sender_id != self._user_id
            and not self._was_seen(room.id, message.id)
        )
        if counts_as_unread:
            room = replace(room, unread_count=room.unread_count + 1)
            self._local_marks[room.id] = next(self._versions)
        self._remember(room.id, message.id)
        self._store.put_room(room)
        return True

    def _reconcile(self, room_id: int, message: ChatMessage) -> Optional[ChatMessage]:
        """Merge ``message`` into the timeline.

        Returns the surviving entry when ``message`` duplicated an existing
        one, or ``None`` after inserting it as a new entry.
        """
        existing = self._find_duplicate(room_id, message)
        if existing is None:
            if message.created_at is None:
                message = replace(message, created_at=self._clock())
            self._store.insert_message(message)
            return None
        survivor = self._merge(existing, message)
        if survivor != existing:
            self._replace_tracked(room_id, existing.id, survivor)
        if not survivor.pending:
            self._remember(room_id, survivor.id)
        return survivor

    def _merge_by_id(self, room_id: int, message: ChatMessage) -> None:
        existing = self._timeline_entry(room_id, message.id)
        if message.created_at is None:
            message = replace(
                message,
                created_at=existing.created_at if existing else self._clock(),
            )
        if existing is None:
            self._store.insert_message(message)
        else:
            merged = replace(message, is_read=message.is_read or existing.is_read)
            self._store.replace_message(room_id, existing.id, merged)
        self._remember(room_id, message.id)

    def _find_duplicate(
        self, room_id: int, message: ChatMessage
    ) -> Optional[ChatMessage]:
        timeline = self._store.timeline(room_id)
        for existing in timeline:
            if existing.id == message.id:
                return existing
            if (
                message.client_ref is not None
                and str(existing.id) == message.client_ref
            ):
                return existing

        reference = message.created_at or self._clock()
        candidates = [
            existing
            for existing in timeline
            if existing.sender_id == message.sender_id
            and existing.body == message.body
            and existing.created_at is not None
            and abs(existing.created_at - reference) <= self._dedup_window
        ]
        if not candidates:
            return None
        pending = [existing for existing in candidates if existing.pending]
        pool = pending or candidates
        return min(pool, key=lambda existing: abs(existing.created_at - reference))

    @staticmethod
    def _merge(existing: ChatMessage, incoming: ChatMessage) -> ChatMessage:
        is_read = existing.is_read or incoming.is_read
        if incoming.pending and not existing.pending:
            return replace(existing, is_read=is_read)
        if existing.pending and not incoming.pending:
            survivor = incoming
        elif existing.id == incoming.id:
            survivor = incoming
        else:
            return replace(existing, is_read=is_read)
        return replace(
            survivor,
            is_read=is_read,
            created_at=survivor.created_at or existing.created_at,
        )

    def _ingest_typing(self, event: TypingEvent) -> bool:
        if event.user_id == self._user_id:
            return False
        if self._store.get_room(event.room_id) is None:
            raise ReconciliationAnomaly(
                f"typing event for unknown room {event.room_id}"
            )
        before = self._store.typing_users(event.room_id)
        self._store.set_typing(event.room_id, event.user_id, event.starting)
        return self._store.typing_users(event.room_id) != before

    def _ingest_read_receipt(self, event: ReadReceiptEvent) -> bool:
        room = self._store.get_room(event.room_id)
        if room is None:
            raise ReconciliationAnomaly(
                f"read receipt for unknown room {event.room_id}"
            )
        if event.message_id is None:
            targets = [
                message
                for message in self._store.timeline(event.room_id)
                if event.reader_id is None or message.sender_id != event.reader_id
            ]
        else:
            entry = self._timeline_entry(event.room_id, event.message_id)
            if entry is not None:
                targets = [entry]
            elif (
                room.last_message is not None
                and room.last_message.id == event.message_id
            ):
                targets = [room.last_message]
            else:
                raise ReconciliationAnomaly(
                    f"read receipt for unknown message {event.message_id}"
                )
        changed = False
        for message in targets:
            if message.is_read:
                continue
            self._replace_tracked(
                event.room_id, message.id, replace(message, is_read=True)
            )
            changed = True
        return changed

    # -- helpers -----------------------------------------------------------

    async def _publish_send(self, message: ChatMessage) -> ChatMessage:
        payload = {
            "chatRoomId": message.chat_room_id,
            "receiverId": message.receiver_id,
            "message": message.body,
            "messageType": message.message_type.value,
            "clientMessageId": str(message.id),
        }
        try:
            await self._transport.publish(SEND_DESTINATION, payload)
        except PublishFailure as exc:
            return self._mark_send_failed(message, exc)
        log_event(
            self._logger,
            logging.DEBUG,
            "chat.send.published",
            room_id=message.chat_room_id,
            temp_id=message.id,
        )
        return message

    def _mark_send_failed(self, message: ChatMessage, exc: ChatError) -> ChatMessage:
        failed = replace(message, send_failed=True)
        self._replace_tracked(message.chat_room_id, message.id, failed)
        self._fail("chat.send.failed", exc, room_id=message.chat_room_id)
        return failed

    async def _publish_typing(self, room_id: int, starting: bool) -> bool:
        payload = {
            "chatRoomId": room_id,
            "senderId": self._user_id,
            "userId": self._user_id,
            "type": "TYPING" if starting else "STOP_TYPING",
            "isTyping": starting,
        }
        try:
            await self._transport.publish(TYPING_DESTINATION, payload)
        except PublishFailure as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.typing.publish_dropped",
                room_id=room_id,
                starting=starting,
                exc=exc,
            )
            return False
        return True

    def _replace_tracked(
        self, room_id: int, message_id: MessageId, message: ChatMessage
    ) -> None:
        """Replace a timeline entry and keep the room's last message in sync."""
        self._store.replace_message(room_id, message_id, message)
        room = self._store.get_room(room_id)
        if (
            room is not None
            and room.last_message is not None
            and room.last_message.id == message_id
        ):
            self._store.put_room(replace(room, last_message=message))

    def _trim_inactive_timeline(self, room_id: int) -> None:
        if room_id == self._active_room_id:
            return
        confirmed = [
            message
            for message in self._store.timeline(room_id)
            if not message.pending and not message.send_failed
        ]
        excess = len(confirmed) - INACTIVE_TIMELINE_LIMIT
        for message in confirmed[: max(excess, 0)]:
            self._store.remove_message(room_id, message.id)

    def _set_unread(self, room_id: int, count: int) -> None:
        room = self._store.get_room(room_id)
        if room is None:
            return
        self._local_marks[room_id] = next(self._versions)
        if room.unread_count != count:
            self._store.put_room(replace(room, unread_count=count))

    def _timeline_entry(
        self, room_id: int, message_id: MessageId
    ) -> Optional[ChatMessage]:
        for message in self._store.timeline(room_id):
            if message.id == message_id:
                return message
        return None

    def _locate(self, message_id: MessageId) -> Optional[tuple[int, ChatMessage]]:
        candidates: Iterable[int] = self._store.timeline_room_ids()
        if self._active_room_id is not None:
            candidates = [self._active_room_id, *candidates]
        for room_id in candidates:
            entry = self._timeline_entry(room_id, message_id)
            if entry is not None:
                return room_id, entry
        return None

    def _is_stale(self, room_id: int, epoch: int) -> bool:
        return epoch != self._selection_epoch or room_id != self._active_room_id

    def _remember(self, room_id: int, message_id: MessageId) -> None:
        if is_temp_id(message_id):
            return
        seen = self._seen.setdefault(room_id, OrderedDict())
        seen[message_id] = None
        seen.move_to_end(message_id)
        while len(seen) > SEEN_MESSAGE_IDS_LIMIT:
            seen.popitem(last=False)

    def _was_seen(self, room_id: int, message_id: MessageId) -> bool:
        return message_id in self._seen.get(room_id, ())

    def _forget_room(self, room_id: int) -> None:
        self._store.clear_timeline(room_id)
        self._store.clear_typing(room_id)
        self._seen.pop(room_id, None)
        self._has_more.pop(room_id, None)

    def _fail(self, event: str, exc: ChatError, **fields: Any) -> OperationResult:
        self._last_error = exc
        log_event(self._logger, logging.WARNING, event, exc=exc, **fields)
        self._notify()
        return OperationResult(ok=False, error=exc)

    def _notify(self) -> None:
        if not self._listeners:
            return
        view = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "chat.listener.failed",
                    listener=getattr(listener, "__name__", repr(listener)),
                    exc=exc,
                )
