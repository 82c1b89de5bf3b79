"""Chat session domain: models, normalization, store and the session engine."""

from .constants import TYPING_IDLE_TIMEOUT_SECONDS
from .engine import ChatSessionEngine, OperationResult
from .errors import (
    ChatError,
    FetchError,
    FetchPermanentError,
    FetchTransientError,
    NormalizeSkip,
    PublishFailure,
    ReconciliationAnomaly,
    StompProtocolError,
)
from .models import (
    ChatMessage,
    ChatRoom,
    ChatSessionView,
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
from .normalizer import normalize, parse_frame
from .store import ChatStore, InMemoryChatStore

__all__ = [
    "ChatError",
    "ChatMessage",
    "ChatRoom",
    "ChatSessionEngine",
    "ChatSessionView",
    "ChatStore",
    "DomainEvent",
    "FetchError",
    "FetchPermanentError",
    "FetchTransientError",
    "HistoryPage",
    "InMemoryChatStore",
    "MessageEvent",
    "MessageType",
    "NormalizeSkip",
    "OperationResult",
    "PresenceEvent",
    "PublishFailure",
    "RawFrame",
    "ReadReceiptEvent",
    "ReconciliationAnomaly",
    "RoomsSnapshot",
    "StompProtocolError",
    "TYPING_IDLE_TIMEOUT_SECONDS",
    "TypingEvent",
    "normalize",
    "parse_frame",
]
