from __future__ import annotations

import json

import pytest

from flatmate_chat.chat.models import RawFrame
from flatmate_chat.core.config import ChatClientConfig
from flatmate_chat.session import ChatSession
from tests.chat.fakes import FakeRest, FakeTransport, make_room

CONFIG = ChatClientConfig.from_raw(
    {
        "api_base_url": "https://api.flatmate.test",
        "ws_url": "wss://chat.flatmate.test/ws",
        "user_id": 7,
        "history_page_size": 30,
    },
    env={},
)


def _session(rest: FakeRest, transport: FakeTransport) -> ChatSession:
    return ChatSession(
        CONFIG,
        rest_client_factory=lambda **_kwargs: rest,
        transport_factory=lambda **_kwargs: transport,
    )


@pytest.mark.anyio
async def test_session_routes_frames_and_status_into_engine() -> None:
    rest = FakeRest((make_room(42),))
    transport = FakeTransport(connected=False)
    transport.frames = [
        RawFrame(
            "/user/7/queue/messages",
            json.dumps({"id": 1, "chatRoomId": 42, "senderId": 8, "message": "hey"}),
        ),
        RawFrame("/topic/presence", json.dumps({"userId": 8, "isOnline": True})),
    ]
    statuses: list[bool] = []

    async with _session(rest, transport) as session:
        session.engine.add_listener(lambda view: statuses.append(view.connected))
        await session.run_forever()

        assert session.engine.room(42).unread_count == 1
        assert session.engine.online_users() == frozenset({8})
        assert session.engine.connected is False
        assert True in statuses

    assert transport.stopped is True
    assert ("close",) in rest.calls


@pytest.mark.anyio
async def test_session_passes_config_to_collaborators() -> None:
    captured: dict[str, dict] = {}

    def _rest_factory(**kwargs):
        captured["rest"] = kwargs
        return FakeRest()

    def _transport_factory(**kwargs):
        captured["transport"] = kwargs
        return FakeTransport()

    session = ChatSession(
        CONFIG,
        rest_client_factory=_rest_factory,
        transport_factory=_transport_factory,
    )
    await session.start(connect=False)
    await session.stop()

    assert captured["rest"]["base_url"] == "https://api.flatmate.test"
    assert captured["transport"]["user_id"] == 7
    assert captured["transport"]["reconnect"] == CONFIG.reconnect
    assert session.engine.user_id == 7
