from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...chat.errors import (
    FetchError,
    FetchPermanentError,
    FetchTransientError,
    NormalizeSkip,
)
from ...chat.models import (
    ChatMessage,
    ChatRoom,
    HistoryPage,
    MessageId,
    MessageType,
    RoomsSnapshot,
)
from ...chat.normalizer import (
    history_page_from_payload,
    message_from_payload,
    room_from_payload,
    rooms_snapshot_from_payload,
)
from ...core.coercion import coerce_int
from ...core.exceptions import TransientError
from ...core.logging_utils import log_event

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

_RETRYABLE_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
)


class ChatRestClient:
    """Async client for the chat REST endpoints.

    Transient failures (network errors, 429 and 5xx) are retried with
    exponential backoff, honoring ``Retry-After`` when the server sends one.
    Everything surfaces to callers as ``FetchError``.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        sleep_fn: SleepFn = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self._max_retries = max(max_retries, 0)
        self._retry_max_delay = retry_max_delay
        self._backoff = wait_exponential(
            multiplier=retry_base_delay, max=retry_max_delay
        )
        self._sleep = sleep_fn

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatRestClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, FetchError) and exc.retry_after is not None:
            return min(exc.retry_after, self._retry_max_delay)
        return float(self._backoff(retry_state))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        expect_json: bool = True,
    ) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=self._retry_wait,
            retry=retry_if_exception_type(TransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                return await self._request_once(
                    method,
                    path,
                    payload=payload,
                    params=params,
                    expect_json=expect_json,
                )
        return None

    async def _request_once(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Mapping[str, Any]],
        params: Optional[Mapping[str, Any]],
        expect_json: bool,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                path,
                json=dict(payload) if payload is not None else None,
                params=dict(params) if params is not None else None,
            )
        except _RETRYABLE_NETWORK_ERRORS as exc:
            raise FetchTransientError(
                f"Chat API network error for {method} {path}: {type(exc).__name__}"
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(
                f"Chat API request error for {method} {path}: {exc}"
            ) from exc

        status_code = response.status_code
        if not 200 <= status_code < 300:
            body_preview = (response.text or "").strip().replace("\n", " ")[:200]
            detail = f"status={status_code} body={body_preview!r}"
            log_event(
                logger,
                logging.DEBUG,
                "chat.rest.http_error",
                method=method,
                path=path,
                status_code=status_code,
            )
            if status_code == 429:
                raise FetchTransientError(
                    f"Chat API rate limited on {method} {path}: {detail}",
                    status_code=status_code,
                    retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                    user_message="Chat service is busy; try again shortly.",
                )
            if 500 <= status_code < 600:
                raise FetchTransientError(
                    f"Chat API server error for {method} {path}: {detail}",
                    status_code=status_code,
                )
            if status_code in {401, 403}:
                raise FetchPermanentError(
                    f"Chat API authentication failure for {method} {path}: {detail}",
                    status_code=status_code,
                    user_message="Not authorized for chat; sign in again.",
                )
            raise FetchError(
                f"Chat API request failed for {method} {path}: {detail}",
                status_code=status_code,
            )

        if not expect_json:
            return None
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(
                f"Chat API returned non-JSON success response for {method} {path}",
                status_code=status_code,
            ) from exc

    async def list_rooms(self) -> RoomsSnapshot:
        payload = await self._request("GET", "/chat/rooms")
        try:
            return rooms_snapshot_from_payload(payload)
        except NormalizeSkip as exc:
            raise FetchError(f"Unexpected rooms payload: {exc.reason}") from exc

    async def get_history(
        self, room_id: int, *, page: int = 0, size: int = 20
    ) -> HistoryPage:
        payload = await self._request(
            "GET",
            f"/chat/history/{room_id}",
            params={"page": page, "size": size},
        )
        try:
            return history_page_from_payload(
                _unwrap(payload, ("messages", "content")), room_id=room_id, page=page
            )
        except NormalizeSkip as exc:
            raise FetchError(f"Unexpected history payload: {exc.reason}") from exc

    async def get_or_create_room(self, other_user_id: int) -> ChatRoom:
        payload = await self._request("GET", f"/chat/room/{other_user_id}")
        data = _unwrap(payload, ("id",))
        if not isinstance(data, Mapping):
            raise FetchError("Unexpected room payload: not an object")
        try:
            return room_from_payload(data)
        except NormalizeSkip as exc:
            raise FetchError(f"Unexpected room payload: {exc.reason}") from exc

    async def send_message(
        self,
        *,
        receiver_id: int,
        body: str,
        message_type: MessageType = MessageType.TEXT,
        room_id: Optional[int] = None,
        client_ref: Optional[str] = None,
    ) -> ChatMessage:
        request: dict[str, Any] = {
            "receiverId": receiver_id,
            "message": body,
            "messageType": MessageType.coerce(message_type).value,
        }
        if room_id is not None:
            request["chatRoomId"] = room_id
        if client_ref is not None:
            request["clientMessageId"] = client_ref
        payload = await self._request("POST", "/chat/send", payload=request)
        data = _unwrap(payload, ("id",))
        if not isinstance(data, Mapping):
            raise FetchError("Unexpected send response: not an object")
        merged: dict[str, Any] = {}
        if room_id is not None:
            merged["chatRoomId"] = room_id
        merged.update(data)
        try:
            return message_from_payload(merged)
        except NormalizeSkip as exc:
            raise FetchError(f"Unexpected send response: {exc.reason}") from exc

    async def mark_read(self, room_id: int) -> None:
        await self._request("POST", f"/chat/read/{room_id}", expect_json=False)

    async def unread_count(self) -> int:
        payload = await self._request("GET", "/chat/unread-count")
        data = _unwrap(payload, ("unreadCount", "count", "totalUnreadCount"))
        if isinstance(data, Mapping):
            for key in ("unreadCount", "count", "totalUnreadCount"):
                if key in data:
                    data = data[key]
                    break
        count = coerce_int(data)
        if count is None:
            raise FetchError("Unexpected unread-count payload")
        return max(count, 0)

    async def delete_message(self, message_id: MessageId) -> None:
        await self._request("DELETE", f"/chat/message/{message_id}", expect_json=False)

    async def delete_room(self, room_id: int) -> None:
        await self._request("DELETE", f"/chat/room/{room_id}", expect_json=False)


def _unwrap(payload: Any, known_keys: tuple[str, ...]) -> Any:
    """Strip a ``{"data": ...}`` envelope unless ``known_keys`` sit at the top level."""
    if not isinstance(payload, Mapping) or "data" not in payload:
        return payload
    if any(key in payload for key in known_keys):
        return payload
    return payload["data"]


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
