"""SQLAlchemy ORM model for sender profiles."""
from __future__ import annotations

from sqlalchemy import Column, String

from chatsync.constants import PROFILES_TABLE
from chatsync.database import Base
from .base import TimestampMixin


class UserProfile(TimestampMixin, Base):
    __tablename__ = PROFILES_TABLE

    id = Column(String(64), primary_key=True)
    username = Column(String(150), nullable=False, index=True)
    display_name = Column(String(150), nullable=True)


__all__ = ["UserProfile"]
