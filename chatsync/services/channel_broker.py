"""In-process channel manager that fans insert events out per conversation."""
from __future__ import annotations

import asyncio
import logging

from ..clients.base import InsertCallback, StatusCallback
from ..schemas import ChannelStatus, InsertEvent

logger = logging.getLogger(__name__)


class LocalChannel:
    """One subscriber's view of a conversation channel."""

    def __init__(
        self,
        broker: "ChannelBroker",
        conversation_id: str,
        *,
        on_insert: InsertCallback,
        on_status: StatusCallback,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.conversation_id = conversation_id
        self.closed = False
        self._broker = broker
        self._on_insert = on_insert
        self._on_status = on_status
        self._loop = loop

    def deliver(self, event: InsertEvent) -> None:
        if not self.closed:
            self._loop.call_soon(self._emit, event)

    def report(self, status: ChannelStatus, error: Exception | None = None) -> None:
        if not self.closed:
            self._loop.call_soon(self._emit_status, status, error)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broker.disconnect(self)

    def _emit(self, event: InsertEvent) -> None:
        if not self.closed:
            self._on_insert(event)

    def _emit_status(self, status: ChannelStatus, error: Exception | None) -> None:
        if not self.closed:
            self._on_status(status, error)


class ChannelBroker:
    """Track per-conversation channels and broadcast insert events."""

    def __init__(self) -> None:
        self._channels: dict[str, set[LocalChannel]] = {}

    def connect(self, conversation_id: str, *, on_insert: InsertCallback, on_status: StatusCallback) -> LocalChannel:
        channel = LocalChannel(
            self,
            conversation_id,
            on_insert=on_insert,
            on_status=on_status,
            loop=asyncio.get_running_loop(),
        )
        self._channels.setdefault(conversation_id, set()).add(channel)
        channel.report(ChannelStatus.ACTIVE)
        return channel

    def disconnect(self, channel: LocalChannel) -> None:
        group = self._channels.get(channel.conversation_id)
        if group is None:
            return
        group.discard(channel)
        if not group:
            self._channels.pop(channel.conversation_id, None)

    def publish(self, event: InsertEvent) -> int:
        """Deliver ``event`` to every channel of its conversation; return the fan-out."""

        targets = list(self._channels.get(event.conversation_id, ()))
        for channel in targets:
            channel.deliver(event)
        logger.debug("Published message %s to %d channel(s)", event.record.id, len(targets))
        return len(targets)

    def fail_all(self, conversation_id: str, error: Exception | None = None) -> None:
        """Report an error on every open channel of ``conversation_id``."""

        for channel in list(self._channels.get(conversation_id, ())):
            channel.report(ChannelStatus.ERROR, error)

    def channel_count(self, conversation_id: str | None = None) -> int:
        if conversation_id is not None:
            return len(self._channels.get(conversation_id, ()))
        return sum(len(group) for group in self._channels.values())


__all__ = ["ChannelBroker", "LocalChannel"]
