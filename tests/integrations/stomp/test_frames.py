from __future__ import annotations

import json

import pytest

from flatmate_chat.chat.errors import StompProtocolError
from flatmate_chat.integrations.stomp.frames import (
    FrameDecoder,
    StompFrame,
    build_connect_frame,
    build_send_frame,
    build_subscribe_frame,
    encode_frame,
    negotiated_heartbeat_seconds,
    parse_frames,
    unescape_header,
)


def test_encode_send_frame_sets_json_headers() -> None:
    frame = build_send_frame("/app/chat.send", {"chatRoomId": 42, "message": "héllo"})

    encoded = encode_frame(frame)

    head, body = encoded.split("\n\n", 1)
    lines = head.split("\n")
    assert lines[0] == "SEND"
    assert "destination:/app/chat.send" in lines
    assert "content-type:application/json" in lines
    assert body.endswith("\x00")
    payload = body[:-1]
    assert json.loads(payload) == {"chatRoomId": 42, "message": "héllo"}
    assert f"content-length:{len(payload.encode('utf-8'))}" in lines


def test_header_values_are_escaped_except_on_connect() -> None:
    escaped = encode_frame(StompFrame("SEND", {"note": "a:b\nc\\d"}, "x"))
    connect = encode_frame(
        build_connect_frame(host="chat.test", token="a:b", heartbeat_ms=10000)
    )

    assert "note:a\\cb\\nc\\\\d" in escaped
    assert "Authorization:Bearer a:b" in connect
    assert "accept-version:1.2" in connect
    assert "heart-beat:10000,10000" in connect


def test_subscribe_frame_headers() -> None:
    frame = build_subscribe_frame("/topic/typing", "sub-1")
    assert frame.headers == {"id": "sub-1", "destination": "/topic/typing", "ack": "auto"}


def test_decoder_skips_heartbeats_and_buffers_partial_frames() -> None:
    decoder = FrameDecoder()
    message = "MESSAGE\ndestination:/topic/typing\nsubscription:sub-1\n\n{\"a\":1}\x00"

    assert decoder.feed("\n") == []
    assert decoder.feed(message[:20]) == []
    assert decoder.pending is True
    frames = decoder.feed(message[20:] + "\n\r\n")

    assert len(frames) == 1
    assert frames[0].command == "MESSAGE"
    assert frames[0].destination == "/topic/typing"
    assert frames[0].body == '{"a":1}'
    assert decoder.pending is False


def test_decoder_honors_content_length_with_embedded_null() -> None:
    body = "ab\x00cd"
    raw = f"MESSAGE\ncontent-length:{len(body)}\ndestination:/x\n\n{body}\x00"
    raw += "RECEIPT\nreceipt-id:1\n\n\x00"

    frames = parse_frames(raw)

    assert [frame.command for frame in frames] == ["MESSAGE", "RECEIPT"]
    assert frames[0].body == body


def test_decoder_unescapes_headers_and_keeps_first_repeat() -> None:
    frames = parse_frames("MESSAGE\nfoo:a\\cb\nfoo:second\n\n\x00")
    assert frames[0].headers["foo"] == "a:b"


def test_decoder_accepts_crlf_line_endings() -> None:
    frames = parse_frames("CONNECTED\r\nversion:1.2\r\n\r\n\x00")
    assert frames[0].command == "CONNECTED"
    assert frames[0].header("version") == "1.2"


@pytest.mark.parametrize(
    "raw",
    [
        "MESSAGE\ndestination:/x\n\nno terminator",
        "MESSAGE\nbroken-header\n\n\x00",
        "MESSAGE\ncontent-length:zz\n\n\x00",
        "MESSAGE\ncontent-length:2\n\nabc\x00",
    ],
)
def test_malformed_frames_raise_protocol_error(raw: str) -> None:
    with pytest.raises(StompProtocolError):
        parse_frames(raw)


def test_invalid_escape_sequence() -> None:
    with pytest.raises(StompProtocolError):
        unescape_header("bad\\t")


def test_negotiated_heartbeat() -> None:
    connected = StompFrame("CONNECTED", {"heart-beat": "0,20000"})

    assert negotiated_heartbeat_seconds(10000, connected) == 20.0
    assert negotiated_heartbeat_seconds(0, connected) is None
    assert negotiated_heartbeat_seconds(10000, StompFrame("CONNECTED")) is None
