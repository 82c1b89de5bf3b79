"""Wire config, REST client, STOMP transport and the session engine together."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Optional

from .chat.engine import ChatSessionEngine
from .chat.models import RawFrame
from .core.config import ChatClientConfig
from .core.logging_utils import log_event
from .integrations.rest.client import ChatRestClient
from .integrations.stomp.transport import StompChatTransport


class ChatSession:
    """Owns one user's chat session: the engine plus its two collaborators.

    ``start`` loads the room list and spawns the transport loop in the
    background; ``stop`` tears both down. Frames go straight from the
    transport to ``engine.handle_frame`` and connection status changes to
    ``engine.set_connection_status``.
    """

    def __init__(
        self,
        config: ChatClientConfig,
        *,
        logger: Optional[logging.Logger] = None,
        rest_client_factory: Callable[..., Any] = ChatRestClient,
        transport_factory: Callable[..., Any] = StompChatTransport,
    ) -> None:
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self.rest = rest_client_factory(
            base_url=config.api_base_url,
            token=config.token,
            timeout_seconds=config.request_timeout_seconds,
            max_retries=config.max_retries,
        )
        self.transport = transport_factory(
            ws_url=config.ws_url,
            user_id=config.user_id,
            token=config.token,
            heartbeat_ms=config.heartbeat_ms,
            reconnect=config.reconnect,
            logger=self._logger,
        )
        self.engine = ChatSessionEngine(
            user_id=config.user_id,
            rest=self.rest,
            transport=self.transport,
            history_page_size=config.history_page_size,
            dedup_window_seconds=config.dedup_window_seconds,
            logger=self._logger,
        )
        self.transport.add_status_listener(self.engine.set_connection_status)
        self._transport_task: Optional[asyncio.Task[None]] = None

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.stop()

    def _on_frame(self, frame: RawFrame) -> None:
        self.engine.handle_frame(frame)

    async def start(self, *, connect: bool = True) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "chat.session.starting",
            user_id=self._config.user_id,
            connect=connect,
        )
        await self.engine.load_rooms()
        if connect and self._transport_task is None:
            self._transport_task = asyncio.create_task(
                self.transport.run(self._on_frame)
            )

    async def run_forever(self) -> None:
        await self.start()
        if self._transport_task is not None:
            await self._transport_task

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            await self.transport.stop()
        task = self._transport_task
        self._transport_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.rest.close()
        log_event(self._logger, logging.INFO, "chat.session.stopped")
