"""STOMP 1.2 frame encoding and decoding for text WebSocket messages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ...chat.errors import StompProtocolError

STOMP_VERSION = "1.2"
NULL = b"\x00"
HEARTBEAT_EOL = "\n"

# Frames whose headers are never escaped.
_UNESCAPED_COMMANDS = frozenset({"CONNECT", "CONNECTED"})

_ESCAPES = (("\\", "\\\\"), ("\r", "\\r"), ("\n", "\\n"), (":", "\\c"))
_UNESCAPES = {"\\": "\\", "r": "\r", "n": "\n", "c": ":"}


@dataclass(frozen=True)
class StompFrame:
    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name)

    @property
    def destination(self) -> Optional[str]:
        return self.headers.get("destination")


def escape_header(value: str) -> str:
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def unescape_header(value: str) -> str:
    if "\\" not in value:
        return value
    out: list[str] = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        code = next(chars, "")
        replacement = _UNESCAPES.get(code)
        if replacement is None:
            raise StompProtocolError(f"invalid header escape sequence '\\{code}'")
        out.append(replacement)
    return "".join(out)


def encode_frame(frame: StompFrame) -> str:
    escape = frame.command not in _UNESCAPED_COMMANDS
    lines = [frame.command]
    for name, value in frame.headers.items():
        if escape:
            name, value = escape_header(name), escape_header(value)
        lines.append(f"{name}:{value}")
    return "\n".join(lines) + "\n\n" + frame.body + "\x00"


class FrameDecoder:
    """Incrementally decode frames from a stream of WebSocket messages.

    Heart-beat EOLs between frames are skipped. A frame split across
    messages is buffered until its NULL terminator (or ``content-length``
    bytes) arrives.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, data: str | bytes) -> list[StompFrame]:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer += data
        frames: list[StompFrame] = []
        while True:
            self._buffer = self._buffer.lstrip(b"\r\n")
            if not self._buffer:
                break
            parsed = _decode_one(self._buffer)
            if parsed is None:
                break
            frame, consumed = parsed
            frames.append(frame)
            self._buffer = self._buffer[consumed:]
        return frames

    @property
    def pending(self) -> bool:
        return bool(self._buffer)


def _decode_one(buffer: bytes) -> Optional[tuple[StompFrame, int]]:
    header_end = buffer.find(b"\n\n")
    separator = 2
    crlf_end = buffer.find(b"\r\n\r\n")
    if crlf_end != -1 and (header_end == -1 or crlf_end < header_end):
        header_end, separator = crlf_end, 4
    if header_end == -1:
        return None

    try:
        head = buffer[:header_end].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise StompProtocolError("frame headers are not utf-8") from exc
    lines = head.replace("\r\n", "\n").split("\n")
    command = lines[0].strip()
    if not command:
        raise StompProtocolError("frame is missing a command")
    escape = command not in _UNESCAPED_COMMANDS
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise StompProtocolError(f"malformed header line {line!r}")
        if escape:
            name, value = unescape_header(name), unescape_header(value)
        # Repeated headers: the first occurrence wins.
        headers.setdefault(name, value)

    body_start = header_end + separator
    content_length = headers.get("content-length")
    if content_length is not None:
        try:
            length = int(content_length)
        except ValueError as exc:
            raise StompProtocolError(
                f"invalid content-length {content_length!r}"
            ) from exc
        body_end = body_start + length
        if len(buffer) < body_end + 1:
            return None
        if buffer[body_end : body_end + 1] != NULL:
            raise StompProtocolError("frame body is not NULL terminated")
    else:
        body_end = buffer.find(NULL, body_start)
        if body_end == -1:
            return None
    try:
        body = buffer[body_start:body_end].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise StompProtocolError("frame body is not utf-8") from exc
    return StompFrame(command=command, headers=headers, body=body), body_end + 1


def parse_frames(data: str | bytes) -> list[StompFrame]:
    """Decode every complete frame in ``data``; a trailing partial frame is an error."""
    decoder = FrameDecoder()
    frames = decoder.feed(data)
    if decoder.pending:
        raise StompProtocolError("incomplete STOMP frame")
    return frames


def build_connect_frame(
    *,
    host: str,
    token: Optional[str],
    heartbeat_ms: int,
) -> StompFrame:
    headers = {
        "accept-version": STOMP_VERSION,
        "host": host,
        "heart-beat": f"{heartbeat_ms},{heartbeat_ms}",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return StompFrame(command="CONNECT", headers=headers)


def build_subscribe_frame(destination: str, subscription_id: str) -> StompFrame:
    return StompFrame(
        command="SUBSCRIBE",
        headers={"id": subscription_id, "destination": destination, "ack": "auto"},
    )


def build_send_frame(destination: str, payload: Mapping[str, Any]) -> StompFrame:
    body = json.dumps(dict(payload), separators=(",", ":"))
    return StompFrame(
        command="SEND",
        headers={
            "destination": destination,
            "content-type": "application/json",
            "content-length": str(len(body.encode("utf-8"))),
        },
        body=body,
    )


def build_disconnect_frame(receipt: str = "disconnect") -> StompFrame:
    return StompFrame(command="DISCONNECT", headers={"receipt": receipt})


def negotiated_heartbeat_seconds(
    client_ms: int, connected: StompFrame
) -> Optional[float]:
    """Client send interval agreed with the broker, or ``None`` if disabled."""
    raw = connected.header("heart-beat") or "0,0"
    try:
        _server_send, server_receive = (int(part) for part in raw.split(",", 1))
    except ValueError:
        return None
    if client_ms <= 0 or server_receive <= 0:
        return None
    return max(client_ms, server_receive) / 1000.0
