"""Utility mixins shared across ORM models."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime


def generate_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Microsecond precision keeps ordering stable on SQLite, whose now() is second-granular.
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Reusable timestamp columns with timezone-aware defaults."""

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


__all__ = ["TimestampMixin", "generate_id", "utcnow"]
