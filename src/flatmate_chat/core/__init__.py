"""Core runtime primitives."""

from .exceptions import FlatmateChatError, PermanentError, TransientError
from .logging_utils import log_event, setup_logging

__all__ = [
    "FlatmateChatError",
    "PermanentError",
    "TransientError",
    "log_event",
    "setup_logging",
]
