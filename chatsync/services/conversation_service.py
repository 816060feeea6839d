"""Group conversation management on top of a chat backend."""
from __future__ import annotations

import logging
from typing import Iterable, Sequence

from ..clients.base import ChatBackend
from ..errors import ChatSyncError, ConversationPermissionError, InvalidRequestError, NotFoundError
from ..schemas import Conversation, Message, MessageRow

logger = logging.getLogger(__name__)


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        normalized = str(value).strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        result.append(normalized)
    return result


class ConversationService:
    """Create, list and administer group conversations for one user."""

    def __init__(self, backend: ChatBackend, user_id: str) -> None:
        self._backend = backend
        self.user_id = user_id

    async def list_conversations(self) -> list[Conversation]:
        rows = await self._backend.list_conversations(self.user_id)
        conversations = [Conversation.model_validate(row) for row in rows]
        conversations.sort(key=lambda item: item.updated_at, reverse=True)
        return conversations

    async def get_conversation(self, conversation_id: str) -> Conversation:
        row = await self._backend.fetch_conversation(conversation_id)
        if row is None:
            raise NotFoundError("Group chat not found")
        conversation = Conversation.model_validate(row)
        if not conversation.is_member(self.user_id):
            raise NotFoundError("Group chat not found")
        return conversation

    async def create_conversation(
        self,
        name: str,
        description: str = "",
        member_ids: Sequence[str] = (),
        actor_name: str | None = None,
    ) -> Conversation:
        name = (name or "").strip()
        if not name:
            raise InvalidRequestError("Group name is required")

        members = _unique([self.user_id, *member_ids])
        row = await self._backend.create_conversation(
            {
                "name": name,
                "description": (description or "").strip(),
                "creator_id": self.user_id,
                "member_ids": members,
                "admin_ids": [self.user_id],
            }
        )
        conversation = Conversation.model_validate(row)
        logger.info("User %s created group %s with %d member(s)", self.user_id, conversation.id, len(members))

        actor = actor_name or "Someone"
        await self.send_system_message(conversation.id, f'{actor} created the group "{name}"')
        return conversation

    async def add_members(self, conversation_id: str, member_ids: Sequence[str]) -> Conversation:
        additions = _unique(member_ids)
        if not additions:
            raise InvalidRequestError("At least one member id is required")

        conversation = await self._require_admin(conversation_id, "add members")
        updated_members = _unique([*conversation.member_ids, *additions])
        if updated_members == conversation.member_ids:
            return conversation

        row = await self._backend.update_conversation(conversation_id, {"member_ids": updated_members})
        return Conversation.model_validate(row)

    async def remove_member(self, conversation_id: str, member_id: str) -> Conversation:
        if not member_id:
            raise InvalidRequestError("Member id is required")
        if member_id == self.user_id:
            raise InvalidRequestError('You cannot remove yourself. Use "Leave Group" instead.')

        conversation = await self._require_admin(conversation_id, "remove members")
        row = await self._backend.update_conversation(
            conversation_id,
            {
                "member_ids": [item for item in conversation.member_ids if item != member_id],
                "admin_ids": [item for item in conversation.admin_ids if item != member_id],
            },
        )
        return Conversation.model_validate(row)

    async def leave_conversation(self, conversation_id: str, actor_name: str | None = None) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        # Post while still a member so the notice reaches the remaining members.
        await self.send_system_message(conversation_id, f"{actor_name or 'Someone'} left the group")
        row = await self._backend.update_conversation(
            conversation_id,
            {
                "member_ids": [item for item in conversation.member_ids if item != self.user_id],
                "admin_ids": [item for item in conversation.admin_ids if item != self.user_id],
            },
        )
        logger.info("User %s left group %s", self.user_id, conversation_id)
        return Conversation.model_validate(row)

    async def update_conversation(
        self,
        conversation_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Conversation:
        conversation = await self.get_conversation(conversation_id)

        changes: dict[str, str] = {}
        if name is not None and name.strip() and name.strip() != conversation.name:
            changes["name"] = name.strip()
        if description is not None and description.strip() != conversation.description:
            changes["description"] = description.strip()
        if not changes:
            raise InvalidRequestError("No changes provided")

        row = await self._backend.update_conversation(conversation_id, changes)
        return Conversation.model_validate(row)

    async def send_system_message(self, conversation_id: str, content: str) -> Message | None:
        """Post a ``system`` message; failures are logged and never raised."""

        try:
            row = await self._backend.insert_message(conversation_id, self.user_id, content, "system")
            return MessageRow.model_validate(row).to_message()
        except ChatSyncError:
            logger.exception("Failed to post system message to %s", conversation_id)
            return None

    async def _require_admin(self, conversation_id: str, action: str) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        if not conversation.is_admin(self.user_id):
            raise ConversationPermissionError(f"Only admins can {action}.")
        return conversation


__all__ = ["ConversationService"]
