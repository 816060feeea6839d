"""Convenience exports for ORM models."""
from .group_chat import GroupChat
from .message import ChatMessage
from .user import UserProfile

__all__ = ["GroupChat", "ChatMessage", "UserProfile"]
