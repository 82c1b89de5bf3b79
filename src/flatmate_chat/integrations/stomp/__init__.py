from .frames import FrameDecoder, StompFrame, encode_frame, parse_frames
from .transport import ConnectionState, StompChatTransport, calculate_reconnect_backoff

__all__ = [
    "ConnectionState",
    "FrameDecoder",
    "StompChatTransport",
    "StompFrame",
    "calculate_reconnect_backoff",
    "encode_frame",
    "parse_frames",
]
