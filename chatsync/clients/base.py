"""Capabilities the sync core expects from the backing service."""
from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol

from ..schemas import ChannelStatus, InsertEvent, MessageType

InsertCallback = Callable[[InsertEvent], None]
StatusCallback = Callable[[ChannelStatus, "Exception | None"], None]


class ChannelConnection(Protocol):
    """An open push channel; closing it must be safe to repeat."""

    async def close(self) -> None:
        ...


class ChatBackend(Protocol):
    async def fetch_messages(self, conversation_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        """Return message rows for ``conversation_id`` ordered by ``created_at``."""
        ...

    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = "text",
        timer_seconds: int | None = None,
        media_url: str | None = None,
    ) -> dict[str, Any]:
        """Persist a message and return the stored row with server id and timestamp."""
        ...

    async def open_channel(
        self,
        conversation_id: str,
        *,
        on_insert: InsertCallback,
        on_status: StatusCallback,
    ) -> ChannelConnection:
        """Open a push channel filtered to ``conversation_id``."""
        ...

    async def fetch_profile(self, user_id: str) -> dict[str, Any] | None:
        """Return ``{"id", "username", "display_name"}`` for ``user_id``, or None if unknown."""
        ...

    async def fetch_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        ...

    async def list_conversations(self, member_id: str) -> list[dict[str, Any]]:
        ...

    async def create_conversation(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        ...

    async def update_conversation(self, conversation_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        ...


__all__ = ["ChatBackend", "ChannelConnection", "InsertCallback", "StatusCallback"]
