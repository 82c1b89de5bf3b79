from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from flatmate_chat.chat.errors import FetchError, FetchPermanentError, FetchTransientError
from flatmate_chat.chat.models import MessageType
from flatmate_chat.integrations.rest.client import ChatRestClient

BASE_URL = "https://api.flatmate.test/api"


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _client(handler, *, token: str = "tok-123", max_retries: int = 3, sleep=None):
    return ChatRestClient(
        base_url=BASE_URL,
        token=token,
        max_retries=max_retries,
        sleep_fn=sleep or _SleepRecorder(),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.anyio
async def test_rest_client_sets_bearer_header_and_parses_rooms() -> None:
    observed: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        observed["authorization"] = request.headers.get("Authorization")
        observed["path"] = request.url.path
        return httpx.Response(
            200,
            json={
                "chatRooms": [{"id": 42, "user1Id": 7, "user2Id": 8, "unreadCount": 2}],
                "totalUnreadCount": 2,
            },
        )

    async with _client(handler) as client:
        snapshot = await client.list_rooms()

    assert observed == {"authorization": "Bearer tok-123", "path": "/api/chat/rooms"}
    assert [room.id for room in snapshot.rooms] == [42]
    assert snapshot.total_unread == 2


@pytest.mark.anyio
async def test_history_request_uses_page_params_and_data_envelope() -> None:
    observed: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        observed.append(str(request.url))
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {
                    "messages": [{"id": 1, "senderId": 8, "message": "a"}],
                    "currentPage": 1,
                    "totalPages": 3,
                },
            },
        )

    async with _client(handler) as client:
        page = await client.get_history(42, page=1, size=20)

    assert observed == [f"{BASE_URL}/chat/history/42?page=1&size=20"]
    assert page.page == 1
    assert page.has_more is True
    assert page.messages[0].chat_room_id == 42


@pytest.mark.anyio
async def test_endpoint_routes() -> None:
    observed: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        observed.append((request.method, request.url.path))
        if request.url.path.endswith("/unread-count"):
            return httpx.Response(200, json={"unreadCount": 6})
        if request.url.path.startswith("/api/chat/room/") and request.method == "GET":
            return httpx.Response(200, json={"id": 50, "user1Id": 7, "user2Id": 9})
        return httpx.Response(204)

    async with _client(handler) as client:
        room = await client.get_or_create_room(9)
        await client.mark_read(42)
        unread = await client.unread_count()
        await client.delete_message(999)
        await client.delete_room(42)

    assert room.id == 50
    assert unread == 6
    assert observed == [
        ("GET", "/api/chat/room/9"),
        ("POST", "/api/chat/read/42"),
        ("GET", "/api/chat/unread-count"),
        ("DELETE", "/api/chat/message/999"),
        ("DELETE", "/api/chat/room/42"),
    ]


@pytest.mark.anyio
async def test_send_message_posts_body_and_parses_echo() -> None:
    observed: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        observed["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": 999,
                "senderId": 7,
                "receiverId": 8,
                "message": "hi",
                "createdAt": "2024-05-01T12:00:00Z",
            },
        )

    async with _client(handler) as client:
        message = await client.send_message(
            receiver_id=8,
            body="hi",
            message_type=MessageType.TEXT,
            room_id=42,
            client_ref="tmp-1",
        )

    assert observed["body"] == {
        "receiverId": 8,
        "message": "hi",
        "messageType": "TEXT",
        "chatRoomId": 42,
        "clientMessageId": "tmp-1",
    }
    assert message.id == 999
    assert message.chat_room_id == 42


@pytest.mark.anyio
async def test_rate_limit_honors_retry_after() -> None:
    sleep = _SleepRecorder()
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return httpx.Response(429, headers={"Retry-After": "2"}, json={})
        return httpx.Response(200, json=5)

    async with _client(handler, sleep=sleep) as client:
        unread = await client.unread_count()

    assert unread == 5
    assert attempts["count"] == 2
    assert sleep.calls == [2.0]


@pytest.mark.anyio
async def test_server_errors_retry_with_backoff_then_raise_transient() -> None:
    sleep = _SleepRecorder()
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(503, text="unavailable")

    async with _client(handler, sleep=sleep) as client:
        with pytest.raises(FetchTransientError) as exc_info:
            await client.list_rooms()

    assert exc_info.value.status_code == 503
    assert attempts["count"] == 4
    assert sleep.calls == [1.0, 2.0, 4.0]


@pytest.mark.anyio
async def test_network_errors_are_transient() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler, max_retries=1) as client:
        with pytest.raises(FetchTransientError):
            await client.mark_read(42)

    assert attempts["count"] == 2


@pytest.mark.anyio
async def test_auth_failures_are_permanent_and_not_retried() -> None:
    sleep = _SleepRecorder()
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(401, json={"error": "expired"})

    async with _client(handler, sleep=sleep) as client:
        with pytest.raises(FetchPermanentError) as exc_info:
            await client.list_rooms()

    assert attempts["count"] == 1
    assert sleep.calls == []
    assert exc_info.value.recoverable is False


@pytest.mark.anyio
async def test_other_failures_raise_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/rooms"):
            return httpx.Response(200, text="<html>")
        return httpx.Response(404, json={"error": "missing"})

    async with _client(handler) as client:
        with pytest.raises(FetchError) as not_found:
            await client.delete_message(1)
        with pytest.raises(FetchError):
            await client.list_rooms()

    assert not_found.value.status_code == 404
    assert not isinstance(not_found.value, FetchTransientError)
