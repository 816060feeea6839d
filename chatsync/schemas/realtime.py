"""Connection states and the websocket frame vocabulary."""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from ..constants import MAX_MESSAGE_LENGTH
from .messages import MessageType


class ChannelStatus(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    ERROR = "error"
    CLOSED = "closed"


class ConnectionStatus(str, Enum):
    """Status signal surfaced to the UI."""

    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    ERROR = "error"


class ClientFrame(BaseModel):
    type: Literal["open", "close", "send", "resend", "retry", "ping"]
    conversation_id: str | None = None
    content: str | None = Field(None, max_length=MAX_MESSAGE_LENGTH)
    message_type: MessageType = "text"
    timer_seconds: int | None = Field(None, ge=1)
    media_url: str | None = None
    local_id: str | None = None


__all__ = ["ChannelStatus", "ConnectionStatus", "ClientFrame"]
