"""SQLAlchemy-backed chat backend with in-process live channels."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import create_session
from ..errors import BackendRequestError, NotFoundError, TransientError
from ..models import ChatMessage, GroupChat, UserProfile
from ..models.base import utcnow
from ..schemas import InsertEvent, MessageRow, MessageType
from ..services.channel_broker import ChannelBroker, LocalChannel
from .base import InsertCallback, StatusCallback

logger = logging.getLogger(__name__)

_CONVERSATION_FIELDS = frozenset({"name", "description", "creator_id", "member_ids", "admin_ids"})


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _message_row(message: ChatMessage, sender: UserProfile | None = None) -> dict[str, Any]:
    row = {
        "id": message.id,
        "group_chat_id": message.group_chat_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "message_type": message.message_type,
        "timer_seconds": message.timer_seconds,
        "media_url": message.media_url,
        "created_at": _iso(message.created_at),
    }
    if sender is not None:
        row["sender"] = _profile_row(sender)
    return row


def _profile_row(profile: UserProfile) -> dict[str, Any]:
    return {"id": profile.id, "username": profile.username, "display_name": profile.display_name}


def _conversation_row(chat: GroupChat) -> dict[str, Any]:
    return {
        "id": chat.id,
        "name": chat.name,
        "description": chat.description or "",
        "creator_id": chat.creator_id,
        "member_ids": list(chat.member_ids or []),
        "admin_ids": list(chat.admin_ids or []),
        "created_at": _iso(chat.created_at),
        "updated_at": _iso(chat.updated_at),
    }


def _profiles_by_id(session: Session, user_ids: set[str]) -> dict[str, UserProfile]:
    if not user_ids:
        return {}
    profiles = session.scalars(select(UserProfile).where(UserProfile.id.in_(user_ids)))
    return {profile.id: profile for profile in profiles}


class LocalChatBackend:
    """Persist conversations with SQLAlchemy and publish inserts to a :class:`ChannelBroker`."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = create_session,
        *,
        broker: ChannelBroker | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.broker = broker or ChannelBroker()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except OperationalError as exc:
            session.rollback()
            logger.exception("Local chat store unavailable")
            raise TransientError("Chat store unavailable") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Local chat store rejected the request")
            raise BackendRequestError("Chat store rejected the request") from exc
        finally:
            session.close()

    async def fetch_messages(self, conversation_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        with self._session_scope() as session:
            stmt = select(ChatMessage).where(ChatMessage.group_chat_id == conversation_id)
            if limit is not None:
                stmt = stmt.order_by(ChatMessage.created_at.desc()).limit(limit)
            else:
                stmt = stmt.order_by(ChatMessage.created_at.asc())
            messages = session.scalars(stmt).all()
            senders = _profiles_by_id(session, {message.sender_id for message in messages})
            rows = [_message_row(message, senders.get(message.sender_id)) for message in messages]
        if limit is not None:
            rows.reverse()
        return rows

    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = "text",
        timer_seconds: int | None = None,
        media_url: str | None = None,
    ) -> dict[str, Any]:
        with self._session_scope() as session:
            chat = session.get(GroupChat, conversation_id)
            if chat is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            message = ChatMessage(
                group_chat_id=conversation_id,
                sender_id=sender_id,
                content=content,
                message_type=message_type,
                timer_seconds=timer_seconds,
                media_url=media_url,
            )
            session.add(message)
            chat.updated_at = utcnow()
            session.commit()
            session.refresh(message)
            row = _message_row(message, session.get(UserProfile, sender_id))
            # Live channels carry the bare row, as the realtime feed does.
            record = MessageRow.model_validate(_message_row(message))

        self.broker.publish(InsertEvent(record=record))
        return row

    async def open_channel(
        self,
        conversation_id: str,
        *,
        on_insert: InsertCallback,
        on_status: StatusCallback,
    ) -> LocalChannel:
        return self.broker.connect(conversation_id, on_insert=on_insert, on_status=on_status)

    async def fetch_profile(self, user_id: str) -> dict[str, Any] | None:
        with self._session_scope() as session:
            profile = session.get(UserProfile, user_id)
            return _profile_row(profile) if profile is not None else None

    async def save_profile(self, user_id: str, username: str, display_name: str | None = None) -> dict[str, Any]:
        """Create or update the profile shown next to ``user_id``'s messages."""

        with self._session_scope() as session:
            profile = session.get(UserProfile, user_id)
            if profile is None:
                profile = UserProfile(id=user_id, username=username)
                session.add(profile)
            profile.username = username
            profile.display_name = display_name
            session.commit()
            session.refresh(profile)
            return _profile_row(profile)

    async def fetch_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        with self._session_scope() as session:
            chat = session.get(GroupChat, conversation_id)
            return _conversation_row(chat) if chat is not None else None

    async def list_conversations(self, member_id: str) -> list[dict[str, Any]]:
        with self._session_scope() as session:
            chats = session.scalars(select(GroupChat).order_by(GroupChat.updated_at.desc())).all()
            # member_ids is a JSON array; filter here so SQLite and Postgres behave alike.
            return [_conversation_row(chat) for chat in chats if member_id in (chat.member_ids or [])]

    async def create_conversation(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        values = {key: value for key, value in fields.items() if key in _CONVERSATION_FIELDS}
        with self._session_scope() as session:
            chat = GroupChat(**values)
            session.add(chat)
            session.commit()
            session.refresh(chat)
            return _conversation_row(chat)

    async def update_conversation(self, conversation_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        with self._session_scope() as session:
            chat = session.get(GroupChat, conversation_id)
            if chat is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            for key, value in fields.items():
                if key in _CONVERSATION_FIELDS:
                    # Assign fresh lists so the JSON columns register the change.
                    setattr(chat, key, list(value) if isinstance(value, (list, tuple)) else value)
            chat.updated_at = utcnow()
            session.commit()
            session.refresh(chat)
            return _conversation_row(chat)

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation together with its messages."""

        with self._session_scope() as session:
            chat = session.get(GroupChat, conversation_id)
            if chat is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            session.delete(chat)
            session.commit()


__all__ = ["LocalChatBackend"]
