from __future__ import annotations

# Application destinations for outbound intents.
SEND_DESTINATION = "/app/chat.send"
TYPING_DESTINATION = "/app/chat.typing"
READ_DESTINATION = "/app/chat.read"

# Shared topics and per-user queues the transport subscribes to.
TYPING_TOPIC = "/topic/typing"
PRESENCE_TOPIC = "/topic/presence"
MESSAGES_QUEUE_TEMPLATE = "/user/{user_id}/queue/messages"
READ_RECEIPTS_QUEUE_TEMPLATE = "/user/{user_id}/queue/read-receipts"

# Input inactivity after which callers are expected to send stop-typing.
TYPING_IDLE_TIMEOUT_SECONDS = 3.0

# Per-room cap on remembered confirmed message ids.
SEEN_MESSAGE_IDS_LIMIT = 500

# Confirmed entries kept per timeline for rooms that are not on screen.
INACTIVE_TIMELINE_LIMIT = 50


def subscription_destinations(user_id: int) -> tuple[str, ...]:
    return (
        MESSAGES_QUEUE_TEMPLATE.format(user_id=user_id),
        TYPING_TOPIC,
        READ_RECEIPTS_QUEUE_TEMPLATE.format(user_id=user_id),
        PRESENCE_TOPIC,
    )
