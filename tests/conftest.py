"""Shared fixtures: a scriptable in-memory backend and coordinator helpers."""
from __future__ import annotations

import asyncio
import itertools
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("CHAT_BACKEND", "local")

from chatsync.config import Settings  # noqa: E402
from chatsync.errors import NotFoundError  # noqa: E402
from chatsync.schemas import ChannelStatus, InsertEvent, MessageRow  # noqa: E402
from chatsync.services import ConversationSwitchCoordinator  # noqa: E402

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    return EPOCH + timedelta(seconds=seconds)


def make_row(
    conversation_id: str,
    message_id: str,
    seconds: float,
    *,
    sender_id: str = "bob",
    content: str | None = None,
    message_type: str = "text",
) -> dict[str, Any]:
    return {
        "id": message_id,
        "group_chat_id": conversation_id,
        "sender_id": sender_id,
        "content": content if content is not None else f"message {message_id}",
        "message_type": message_type,
        "timer_seconds": None,
        "media_url": None,
        "created_at": ts(seconds).isoformat(),
    }


async def settle(rounds: int = 30) -> None:
    """Let scheduled callbacks and short task chains run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeChannel:
    def __init__(self, backend: "FakeBackend", conversation_id: str, on_insert, on_status) -> None:
        self.backend = backend
        self.conversation_id = conversation_id
        self.on_insert = on_insert
        self.on_status = on_status
        self.closed = False
        self.close_calls = 0

    def push(self, row: Mapping[str, Any], *, event_type: str = "INSERT") -> None:
        self.on_insert(InsertEvent(type=event_type, record=MessageRow.model_validate(row)))

    def fail(self, error: Exception | None = None) -> None:
        self.on_status(ChannelStatus.ERROR, error)

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        if self.backend.close_error is not None:
            raise self.backend.close_error


class FakeBackend:
    """In-memory backend whose failures and timing can be scripted per test."""

    def __init__(self) -> None:
        self.conversations: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[dict[str, Any]]] = {}
        self.channels: list[FakeChannel] = []
        self.history_failures: dict[str, list[Exception]] = {}
        self.open_failures: list[Exception] = []
        self.insert_failures: list[Exception] = []
        self.history_gates: dict[str, asyncio.Event] = {}
        self.insert_gate: asyncio.Event | None = None
        self.auto_activate = True
        self.echo_inserts = True
        self.close_error: Exception | None = None
        self.fetch_calls: list[tuple[str, int | None]] = []
        self.open_calls: list[str] = []
        self.profiles: dict[str, dict[str, Any]] = {}
        self.profile_calls: list[str] = []
        self.profile_gate: asyncio.Event | None = None
        self._ids = itertools.count(1)
        self._clock = itertools.count(1000)

    # -- scripting helpers -----------------------------------------------------

    def add_conversation(
        self,
        conversation_id: str,
        members: Iterable[str] = ("alice", "bob"),
        admins: Iterable[str] | None = None,
        name: str = "Test Group",
    ) -> dict[str, Any]:
        members = list(members)
        stamp = ts(next(self._clock)).isoformat()
        row = {
            "id": conversation_id,
            "name": name,
            "description": "",
            "creator_id": members[0],
            "member_ids": members,
            "admin_ids": list(admins) if admins is not None else members[:1],
            "created_at": stamp,
            "updated_at": stamp,
        }
        self.conversations[conversation_id] = row
        self.messages.setdefault(conversation_id, [])
        return row

    def add_message(self, conversation_id: str, message_id: str, seconds: float, **kwargs: Any) -> dict[str, Any]:
        row = make_row(conversation_id, message_id, seconds, **kwargs)
        self.messages.setdefault(conversation_id, []).append(row)
        return row

    def block_history(self, conversation_id: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.history_gates[conversation_id] = gate
        return gate

    def open_channels(self, conversation_id: str | None = None) -> list[FakeChannel]:
        return [
            channel
            for channel in self.channels
            if not channel.closed and (conversation_id is None or channel.conversation_id == conversation_id)
        ]

    def emit(self, conversation_id: str, row: Mapping[str, Any]) -> None:
        for channel in self.open_channels(conversation_id):
            channel.push(row)

    # -- ChatBackend -------------------------------------------------------------

    async def fetch_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        row = self.conversations.get(conversation_id)
        return dict(row) if row is not None else None

    async def fetch_messages(self, conversation_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        self.fetch_calls.append((conversation_id, limit))
        gate = self.history_gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        failures = self.history_failures.get(conversation_id)
        if failures:
            raise failures.pop(0)
        rows = sorted(self.messages.get(conversation_id, []), key=lambda row: row["created_at"])
        if limit is not None:
            rows = rows[-limit:]
        return [dict(row) for row in rows]

    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        timer_seconds: int | None = None,
        media_url: str | None = None,
    ) -> dict[str, Any]:
        if self.insert_failures:
            raise self.insert_failures.pop(0)
        if conversation_id not in self.conversations:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        row = make_row(
            conversation_id,
            f"srv-{next(self._ids)}",
            next(self._clock),
            sender_id=sender_id,
            content=content,
            message_type=message_type,
        )
        row["timer_seconds"] = timer_seconds
        row["media_url"] = media_url
        self.messages[conversation_id].append(row)
        self.conversations[conversation_id]["updated_at"] = row["created_at"]
        if self.echo_inserts:
            self.emit(conversation_id, row)
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        return dict(row)

    async def open_channel(self, conversation_id: str, *, on_insert, on_status) -> FakeChannel:
        self.open_calls.append(conversation_id)
        if self.open_failures:
            raise self.open_failures.pop(0)
        channel = FakeChannel(self, conversation_id, on_insert, on_status)
        self.channels.append(channel)
        if self.auto_activate:
            asyncio.get_running_loop().call_soon(on_status, ChannelStatus.ACTIVE, None)
        return channel

    async def fetch_profile(self, user_id: str) -> dict[str, Any] | None:
        self.profile_calls.append(user_id)
        if self.profile_gate is not None:
            await self.profile_gate.wait()
        profile = self.profiles.get(user_id)
        return dict(profile) if profile is not None else None

    async def list_conversations(self, member_id: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self.conversations.values() if member_id in row["member_ids"]]

    async def create_conversation(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        conversation_id = f"group-{next(self._ids)}"
        stamp = ts(next(self._clock)).isoformat()
        row = {"id": conversation_id, "description": "", "created_at": stamp, "updated_at": stamp, **fields}
        self.conversations[conversation_id] = row
        self.messages[conversation_id] = []
        return dict(row)

    async def update_conversation(self, conversation_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        row = self.conversations.get(conversation_id)
        if row is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        row.update(fields)
        row["updated_at"] = ts(next(self._clock)).isoformat()
        return dict(row)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sync_settings() -> Settings:
    return Settings(
        retry_max_attempts=3,
        retry_base_delay=1.0,
        subscription_setup_timeout=0.2,
        history_page_size=None,
    )


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_coordinator(
    sync_settings: Settings,
    recording_sleep: RecordingSleep,
) -> Callable[..., ConversationSwitchCoordinator]:
    def _factory(backend: Any, user_id: str = "alice", **kwargs: Any) -> ConversationSwitchCoordinator:
        kwargs.setdefault("settings", sync_settings)
        kwargs.setdefault("sleep", recording_sleep)
        return ConversationSwitchCoordinator(backend, user_id=user_id, **kwargs)

    return _factory
