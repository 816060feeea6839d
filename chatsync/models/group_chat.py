"""SQLAlchemy ORM model for group chats."""
from __future__ import annotations

from sqlalchemy import JSON, Column, String, Text
from sqlalchemy.orm import relationship

from chatsync.database import Base
from .base import TimestampMixin, generate_id


class GroupChat(TimestampMixin, Base):
    __tablename__ = "group_chats"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=False, default="")
    creator_id = Column(String(64), nullable=False, index=True)
    member_ids = Column(JSON, nullable=False, default=list)
    admin_ids = Column(JSON, nullable=False, default=list)

    messages = relationship("ChatMessage", back_populates="group_chat", cascade="all, delete-orphan")


__all__ = ["GroupChat"]
