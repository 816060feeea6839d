"""Group conversation API routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from ..clients.base import ChatBackend
from ..clients.factory import get_chat_backend
from ..config import get_settings
from ..schemas import (
    Conversation,
    ConversationCreate,
    ConversationMembersRequest,
    ConversationUpdate,
    MessageThreadResponse,
)
from ..services import ConversationService, HistoryLoader, get_current_user_id

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _service(
    backend: ChatBackend = Depends(get_chat_backend),
    user_id: str = Depends(get_current_user_id),
) -> ConversationService:
    return ConversationService(backend, user_id)


@router.get("", response_model=list[Conversation])
async def list_conversations_endpoint(service: ConversationService = Depends(_service)) -> list[Conversation]:
    return await service.list_conversations()


@router.post("", response_model=Conversation, status_code=status.HTTP_201_CREATED)
async def create_conversation_endpoint(
    payload: ConversationCreate,
    actor_name: str | None = Query(None, max_length=60),
    service: ConversationService = Depends(_service),
) -> Conversation:
    return await service.create_conversation(
        payload.name,
        payload.description,
        payload.member_ids,
        actor_name=actor_name,
    )


@router.get("/{conversation_id}", response_model=Conversation)
async def conversation_detail_endpoint(
    conversation_id: str,
    service: ConversationService = Depends(_service),
) -> Conversation:
    return await service.get_conversation(conversation_id)


@router.patch("/{conversation_id}", response_model=Conversation)
async def update_conversation_endpoint(
    conversation_id: str,
    payload: ConversationUpdate,
    service: ConversationService = Depends(_service),
) -> Conversation:
    return await service.update_conversation(conversation_id, name=payload.name, description=payload.description)


@router.post("/{conversation_id}/members", response_model=Conversation)
async def add_members_endpoint(
    conversation_id: str,
    payload: ConversationMembersRequest,
    service: ConversationService = Depends(_service),
) -> Conversation:
    return await service.add_members(conversation_id, payload.member_ids)


@router.delete("/{conversation_id}/members/{member_id}", response_model=Conversation)
async def remove_member_endpoint(
    conversation_id: str,
    member_id: str,
    service: ConversationService = Depends(_service),
) -> Conversation:
    return await service.remove_member(conversation_id, member_id)


@router.post("/{conversation_id}/leave", response_model=Conversation)
async def leave_conversation_endpoint(
    conversation_id: str,
    actor_name: str | None = Query(None, max_length=60),
    service: ConversationService = Depends(_service),
) -> Conversation:
    return await service.leave_conversation(conversation_id, actor_name=actor_name)


@router.get("/{conversation_id}/messages", response_model=MessageThreadResponse)
async def conversation_messages_endpoint(
    conversation_id: str,
    backend: ChatBackend = Depends(get_chat_backend),
    user_id: str = Depends(get_current_user_id),
) -> MessageThreadResponse:
    loader = HistoryLoader(backend, user_id=user_id, page_size=get_settings().history_page_size)
    messages = await loader.load_history(conversation_id)
    return MessageThreadResponse(conversation_id=conversation_id, messages=messages)


__all__ = ["router"]
