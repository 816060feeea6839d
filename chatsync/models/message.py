"""SQLAlchemy ORM model for chat messages."""
from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from chatsync.database import Base
from .base import generate_id, utcnow


class ChatMessage(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_id)
    group_chat_id = Column(String(36), ForeignKey("group_chats.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    message_type = Column(String(16), nullable=False, default="text")
    timer_seconds = Column(Integer, nullable=True)
    media_url = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    group_chat = relationship("GroupChat", back_populates="messages")


__all__ = ["ChatMessage"]
