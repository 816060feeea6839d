"""Initial history page for a conversation."""
from __future__ import annotations

import logging

from pydantic import ValidationError

from ..clients.base import ChatBackend
from ..errors import NotFoundError
from ..schemas import Conversation, Message, MessageRow

logger = logging.getLogger(__name__)


class HistoryLoader:
    """Fetch the ordered message history for one conversation.

    When ``user_id`` is set the loader also checks membership, so a caller
    outside the conversation sees the same ``NotFoundError`` as for a
    missing conversation.
    """

    def __init__(self, backend: ChatBackend, *, user_id: str | None = None, page_size: int | None = None) -> None:
        self._backend = backend
        self._user_id = user_id
        self._page_size = page_size

    async def load_history(self, conversation_id: str) -> list[Message]:
        row = await self._backend.fetch_conversation(conversation_id)
        if row is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if self._user_id is not None:
            conversation = Conversation.model_validate(row)
            if not conversation.is_member(self._user_id):
                raise NotFoundError(f"Conversation {conversation_id} not found")

        rows = await self._backend.fetch_messages(conversation_id, limit=self._page_size)
        messages = _rows_to_messages(conversation_id, rows)
        logger.info("Loaded %d message(s) for conversation %s", len(messages), conversation_id)
        return messages


def _rows_to_messages(conversation_id: str, rows: list[dict]) -> list[Message]:
    seen: set[str] = set()
    messages: list[Message] = []
    for raw in rows:
        try:
            message = MessageRow.model_validate(raw).to_message()
        except ValidationError:
            logger.warning("Skipping malformed message row in conversation %s", conversation_id, exc_info=True)
            continue
        if message.conversation_id != conversation_id:
            logger.warning(
                "History for %s returned message %s of conversation %s",
                conversation_id,
                message.id,
                message.conversation_id,
            )
            continue
        if message.id in seen:
            continue
        seen.add(message.id)
        messages.append(message)
    # sort() is stable, so rows sharing a timestamp keep the backend order.
    messages.sort(key=lambda item: item.created_at)
    return messages


__all__ = ["HistoryLoader"]
