"""Message shapes shared by the sync core and the backend adapters."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import LOCAL_ID_PREFIX, MESSAGES_TABLE

MessageType = Literal["text", "system", "media"]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DeliveryState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Message(BaseModel):
    """One immutable chat event inside a conversation timeline."""

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    sender_id: str
    content: str = ""
    message_type: MessageType = "text"
    timer_seconds: int | None = Field(None, ge=1)
    media_url: str | None = None
    sender_name: str | None = None
    created_at: datetime
    delivery: DeliveryState = DeliveryState.SENT

    @field_validator("created_at")
    @classmethod
    def _normalise_created_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def is_local(self) -> bool:
        """True while the message only exists as an optimistic local copy."""

        return self.id.startswith(LOCAL_ID_PREFIX)


class SenderProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    username: str | None = None
    display_name: str | None = None


class MessageRow(BaseModel):
    """A ``messages`` row as returned by the backing store."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    conversation_id: str = Field(..., alias="group_chat_id")
    sender_id: str
    content: str | None = None
    message_type: MessageType = "text"
    timer_seconds: int | None = None
    media_url: str | None = None
    created_at: datetime
    sender: SenderProfile | None = None

    @field_validator("id", "conversation_id", "sender_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("timer_seconds", mode="before")
    @classmethod
    def _drop_empty_timer(cls, value: Any) -> Any:
        # Rows written without a timer come back as 0 from some clients.
        if value in (0, "0", ""):
            return None
        return value

    def to_message(self) -> Message:
        sender_name = None
        if self.sender is not None:
            sender_name = self.sender.display_name or self.sender.username
        return Message(
            id=self.id,
            conversation_id=self.conversation_id,
            sender_id=self.sender_id,
            content=self.content or "",
            message_type=self.message_type,
            timer_seconds=self.timer_seconds,
            media_url=self.media_url,
            sender_name=sender_name,
            created_at=self.created_at,
        )


class InsertEvent(BaseModel):
    """A change event pushed by the live channel."""

    model_config = ConfigDict(extra="ignore")

    type: str = "INSERT"
    table: str = MESSAGES_TABLE
    record: MessageRow
    commit_timestamp: datetime | None = None

    @property
    def conversation_id(self) -> str:
        return self.record.conversation_id

    @property
    def is_insert(self) -> bool:
        return self.type.upper() == "INSERT" and self.table == MESSAGES_TABLE


class MessageThreadResponse(BaseModel):
    conversation_id: str
    messages: List[Message]


__all__ = [
    "MessageType",
    "DeliveryState",
    "Message",
    "SenderProfile",
    "MessageRow",
    "InsertEvent",
    "MessageThreadResponse",
]
