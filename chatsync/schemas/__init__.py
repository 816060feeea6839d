"""Convenience exports for schema layer."""
from .conversations import Conversation, ConversationCreate, ConversationMembersRequest, ConversationUpdate
from .messages import (
    DeliveryState,
    InsertEvent,
    Message,
    MessageRow,
    MessageThreadResponse,
    MessageType,
    SenderProfile,
)
from .realtime import ChannelStatus, ClientFrame, ConnectionStatus

__all__ = [
    "Conversation",
    "ConversationCreate",
    "ConversationMembersRequest",
    "ConversationUpdate",
    "DeliveryState",
    "InsertEvent",
    "Message",
    "MessageRow",
    "MessageThreadResponse",
    "MessageType",
    "SenderProfile",
    "ChannelStatus",
    "ClientFrame",
    "ConnectionStatus",
]
