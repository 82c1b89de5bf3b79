"""Error taxonomy for the chat session layer.

REST failures surface as ``FetchError`` values at the engine boundary.
Uninterpretable frames raise ``NormalizeSkip``; ``ingest`` drops events
that reference unknown local state.
"""

from __future__ import annotations

from typing import Optional

from ..core.exceptions import FlatmateChatError, PermanentError, TransientError


class ChatError(FlatmateChatError):
    """Base chat session error."""


class FetchError(ChatError):
    """A REST call failed (network error or non-2xx response)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Chat service request failed."
        super().__init__(message, user_message=user_message)
        self.status_code = status_code
        self.retry_after = retry_after


class FetchTransientError(FetchError, TransientError):
    """Retryable REST failure (network, rate limit, server error)."""


class FetchPermanentError(FetchError, PermanentError):
    """Non-retryable REST failure (authentication or authorization)."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity


class NormalizeSkip(ChatError):
    """A transport frame could not be interpreted; it is dropped."""

    def __init__(self, reason: str, *, destination: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.destination = destination


class PublishFailure(ChatError, TransientError):
    """The transport could not publish an intent; the intent is dropped."""

    def __init__(self, message: str, *, destination: Optional[str] = None) -> None:
        super().__init__(message, user_message="Not connected to chat.")
        self.destination = destination


class ReconciliationAnomaly(ChatError):
    """An event referenced a room or message that is not present locally."""


class StompProtocolError(ChatError, TransientError):
    """The broker sent an ERROR frame or an unexpected frame sequence."""
