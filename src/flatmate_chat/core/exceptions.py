"""Shared error base classes.

Adapter and engine errors compose these so retry and severity behavior stays
consistent across the REST client, the transport and the session engine.
"""

from __future__ import annotations

from typing import Optional


class FlatmateChatError(Exception):
    """Base error for the chat client."""

    recoverable: bool = True
    severity: str = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(FlatmateChatError):
    """Failure that may succeed when retried (network, rate limit, 5xx)."""

    recoverable = True
    severity = "transient"


class PermanentError(FlatmateChatError):
    """Failure that will not succeed on retry (auth, validation, config)."""

    recoverable = False
    severity = "permanent"
