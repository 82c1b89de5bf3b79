from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union
from urllib.parse import urlparse

import websockets
from websockets.exceptions import ConnectionClosed

from ...chat.constants import subscription_destinations
from ...chat.errors import PublishFailure, StompProtocolError
from ...chat.models import RawFrame
from ...chat.ports import StatusListener
from ...core.config import ReconnectPolicy
from ...core.logging_utils import log_event
from .frames import (
    HEARTBEAT_EOL,
    FrameDecoder,
    StompFrame,
    build_connect_frame,
    build_disconnect_frame,
    build_send_frame,
    build_subscribe_frame,
    encode_frame,
    negotiated_heartbeat_seconds,
)

STOMP_SUBPROTOCOLS = ("v12.stomp", "v11.stomp")

FrameHandler = Callable[[RawFrame], Union[Awaitable[None], None]]
ConnectFn = Callable[..., Any]
SleepFn = Callable[[float], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


def calculate_reconnect_backoff(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
    jitter: float = 0.0,
    rand_float: Callable[[], float] = random.random,
) -> float:
    """``min(base * 2**attempt, cap)``, optionally scaled by ``1 +/- jitter``."""
    if max_seconds <= 0.0 or base_seconds <= 0.0:
        return 0.0
    normalized_attempt = max(attempt, 0)
    # Avoid huge powers once the cap is reached.
    if base_seconds * (2 ** min(normalized_attempt, 62)) >= max_seconds:
        delay = max_seconds
    else:
        delay = base_seconds * (2**normalized_attempt)
    if jitter > 0.0:
        spread = min(max(rand_float(), 0.0), 1.0) * 2.0 - 1.0
        delay *= 1.0 + jitter * spread
    return float(min(max_seconds, max(0.0, delay)))


class StompChatTransport:
    """STOMP-over-WebSocket transport with a bounded reconnect state machine.

    ``run`` owns the connection loop. After ``reconnect.max_attempts``
    consecutive failures without a successful CONNECTED handshake the
    transport parks in ``DEGRADED`` until ``reconnect()`` or ``stop()``.
    """

    def __init__(
        self,
        *,
        ws_url: str,
        user_id: int,
        token: Optional[str] = None,
        heartbeat_ms: int = 10000,
        reconnect: Optional[ReconnectPolicy] = None,
        jitter: float = 0.0,
        logger: Optional[logging.Logger] = None,
        connect_fn: Optional[ConnectFn] = None,
        sleep_fn: SleepFn = asyncio.sleep,
        rand_float: Callable[[], float] = random.random,
    ) -> None:
        self._ws_url = ws_url
        self._host = urlparse(ws_url).hostname or "localhost"
        self._user_id = user_id
        self._token = token
        self._heartbeat_ms = heartbeat_ms
        self._policy = reconnect or ReconnectPolicy()
        self._jitter = jitter
        self._logger = logger or logging.getLogger(__name__)
        self._connect_fn = connect_fn or websockets.connect
        self._sleep = sleep_fn
        self._rand_float = rand_float

        self._state = ConnectionState.DISCONNECTED
        self._status_listeners: list[StatusListener] = []
        self._state_listeners: list[Callable[[ConnectionState], None]] = []
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._websocket: Any = None
        self._send_lock = asyncio.Lock()
        self._reconnect_attempt = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_state_listener(self, listener: Callable[[ConnectionState], None]) -> None:
        self._state_listeners.append(listener)

    async def publish(self, destination: str, payload: Mapping[str, Any]) -> None:
        websocket = self._websocket
        if not self.connected or websocket is None:
            raise PublishFailure(
                f"Cannot publish to {destination}: transport is {self._state.value}",
                destination=destination,
            )
        try:
            await self._send(
                websocket, encode_frame(build_send_frame(destination, payload))
            )
        except ConnectionClosed as exc:
            raise PublishFailure(
                f"Connection closed while publishing to {destination}",
                destination=destination,
            ) from exc

    def reconnect(self) -> None:
        """Leave ``DEGRADED`` and start a fresh round of connection attempts."""
        self._reconnect_attempt = 0
        self._resume_event.set()

    async def stop(self) -> None:
        self._stop_event.set()
        self._resume_event.set()
        await self._cancel_heartbeat()
        websocket = self._websocket
        if websocket is not None:
            with contextlib.suppress(Exception):
                await self._send(websocket, encode_frame(build_disconnect_frame()))
            with contextlib.suppress(Exception):
                await websocket.close()

    async def run(self, on_frame: FrameHandler) -> None:
        self._stop_event.clear()
        while not self._stop_event.is_set():
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with self._connect_fn(
                    self._ws_url, subprotocols=list(STOMP_SUBPROTOCOLS)
                ) as websocket:
                    self._websocket = websocket
                    await self._run_connection(websocket, on_frame)
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as exc:
                log_event(
                    self._logger,
                    logging.INFO,
                    "stomp.connection.closed",
                    code=getattr(getattr(exc, "rcvd", None), "code", None),
                )
            except StompProtocolError as exc:
                log_event(
                    self._logger, logging.WARNING, "stomp.protocol_error", exc=exc
                )
            except Exception as exc:
                log_event(
                    self._logger, logging.WARNING, "stomp.connection.failed", exc=exc
                )
            finally:
                self._websocket = None
                await self._cancel_heartbeat()

            if self._stop_event.is_set():
                break
            self._set_state(ConnectionState.DISCONNECTED)
            if self._reconnect_attempt >= self._policy.max_attempts:
                await self._wait_while_degraded()
                continue
            backoff = calculate_reconnect_backoff(
                self._reconnect_attempt,
                base_seconds=self._policy.base_seconds,
                max_seconds=self._policy.max_seconds,
                jitter=self._jitter,
                rand_float=self._rand_float,
            )
            self._reconnect_attempt += 1
            log_event(
                self._logger,
                logging.INFO,
                "stomp.reconnect.scheduled",
                attempt=self._reconnect_attempt,
                max_attempts=self._policy.max_attempts,
                delay_seconds=round(backoff, 3),
            )
            await self._sleep(backoff)
        self._set_state(ConnectionState.DISCONNECTED)

    async def _wait_while_degraded(self) -> None:
        self._resume_event.clear()
        self._set_state(ConnectionState.DEGRADED)
        log_event(
            self._logger,
            logging.ERROR,
            "stomp.reconnect.exhausted",
            attempts=self._reconnect_attempt,
        )
        await self._resume_event.wait()
        self._reconnect_attempt = 0

    async def _run_connection(self, websocket: Any, on_frame: FrameHandler) -> None:
        decoder = FrameDecoder()
        await self._send(
            websocket,
            encode_frame(
                build_connect_frame(
                    host=self._host,
                    token=self._token,
                    heartbeat_ms=self._heartbeat_ms,
                )
            ),
        )
        connected_frame = await self._await_connected(websocket, decoder)
        for index, destination in enumerate(subscription_destinations(self._user_id)):
            await self._send(
                websocket,
                encode_frame(build_subscribe_frame(destination, f"sub-{index}")),
            )
        interval = negotiated_heartbeat_seconds(self._heartbeat_ms, connected_frame)
        if interval is not None:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(websocket, interval)
            )
        # A completed handshake restarts the failure budget even if the socket
        # later drops with an error.
        self._reconnect_attempt = 0
        self._set_state(ConnectionState.CONNECTED)

        async for raw_message in websocket:
            for frame in decoder.feed(raw_message):
                await self._dispatch(frame, on_frame)

    async def _await_connected(
        self, websocket: Any, decoder: FrameDecoder
    ) -> StompFrame:
        while True:
            raw = await websocket.recv()
            for frame in decoder.feed(raw):
                if frame.command == "CONNECTED":
                    return frame
                if frame.command == "ERROR":
                    detail = frame.header("message") or frame.body
                    raise StompProtocolError(f"broker rejected CONNECT: {detail}")
                raise StompProtocolError(
                    f"expected CONNECTED frame, got {frame.command}"
                )

    async def _dispatch(self, frame: StompFrame, on_frame: FrameHandler) -> None:
        if frame.command == "MESSAGE":
            result = on_frame(RawFrame(destination=frame.destination, body=frame.body))
            if inspect.isawaitable(result):
                await result
            return
        if frame.command == "ERROR":
            raise StompProtocolError(
                f"broker error: {frame.header('message') or frame.body}"
            )
        if frame.command == "RECEIPT":
            return
        log_event(
            self._logger,
            logging.DEBUG,
            "stomp.frame.ignored",
            command=frame.command,
        )

    async def _send(self, websocket: Any, data: str) -> None:
        async with self._send_lock:
            await websocket.send(data)

    async def _heartbeat_loop(self, websocket: Any, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(interval_seconds)
            await self._send(websocket, HEARTBEAT_EOL)

    async def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        task = self._heartbeat_task
        self._heartbeat_task = None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            log_event(self._logger, logging.DEBUG, "stomp.heartbeat.ended", exc=exc)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        was_connected = self.connected
        self._state = state
        log_event(self._logger, logging.DEBUG, "stomp.state", state=state.value)
        for state_listener in list(self._state_listeners):
            state_listener(state)
        if was_connected != self.connected:
            for listener in list(self._status_listeners):
                listener(self.connected)
