"""Schemas describing group conversations."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Conversation(BaseModel):
    model_config = ConfigDict(extra="ignore", from_attributes=True)

    id: str
    name: str
    description: str = ""
    creator_id: str
    member_ids: List[str] = Field(default_factory=list)
    admin_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @field_validator("id", "creator_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("member_ids", "admin_ids", mode="before")
    @classmethod
    def _stringify_members(cls, value: Any) -> Any:
        if value is None:
            return []
        return [str(item) for item in value]

    @field_validator("description", mode="before")
    @classmethod
    def _blank_description(cls, value: Any) -> Any:
        return value or ""

    def is_member(self, user_id: str) -> bool:
        return user_id in self.member_ids

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_ids


class ConversationCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=60)
    description: str = Field("", max_length=280)
    member_ids: List[str] = Field(default_factory=list)


class ConversationUpdate(BaseModel):
    name: str | None = Field(None, min_length=3, max_length=60)
    description: str | None = Field(None, max_length=280)


class ConversationMembersRequest(BaseModel):
    member_ids: List[str] = Field(..., min_length=1)


__all__ = [
    "Conversation",
    "ConversationCreate",
    "ConversationUpdate",
    "ConversationMembersRequest",
]
