"""Project-wide constant values."""
from __future__ import annotations

MESSAGES_TABLE = "messages"
CONVERSATIONS_TABLE = "group_chats"
PROFILES_TABLE = "users"

LOCAL_ID_PREFIX = "local-"  # ids of optimistic messages that have no server id yet

MAX_MESSAGE_LENGTH = 2000
MAX_TIMER_SECONDS = 86400

__all__ = [
    "MESSAGES_TABLE",
    "CONVERSATIONS_TABLE",
    "PROFILES_TABLE",
    "LOCAL_ID_PREFIX",
    "MAX_MESSAGE_LENGTH",
    "MAX_TIMER_SECONDS",
]
