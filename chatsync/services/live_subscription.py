"""Live insert channel bound to one conversation."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from pydantic import ValidationError

from ..clients.base import ChannelConnection, ChatBackend
from ..errors import ChatSyncError, SetupCancelled, SubscriptionTimeout, TransientError
from ..schemas import ChannelStatus, InsertEvent, Message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], None]
ErrorCallback = Callable[["SubscriptionHandle", Exception], None]
SenderResolver = Callable[[str], Awaitable["str | None"]]


class SubscriptionHandle:
    """One live channel for exactly one conversation.

    Messages reach ``on_message`` asynchronously and in delivery order, each
    id at most once. With a ``resolve_sender`` the events pass through one
    worker task that fills in ``sender_name`` first, so live messages carry
    the same display name as history rows.
    """

    def __init__(
        self,
        conversation_id: str,
        on_message: MessageCallback,
        *,
        on_error: ErrorCallback | None = None,
        resolve_sender: SenderResolver | None = None,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.conversation_id = conversation_id
        self.state = ChannelStatus.CONNECTING
        self._on_message = on_message
        self._on_error = on_error
        self._loop = loop
        self._connection: ChannelConnection | None = None
        self._seen: set[str] = set()
        self._ready: asyncio.Future[None] = loop.create_future()
        self._resolve_sender = resolve_sender
        self._names: dict[str, str | None] = {}
        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self.state is ChannelStatus.ACTIVE

    @property
    def released(self) -> bool:
        return self.state is ChannelStatus.CLOSED

    def attach(self, connection: ChannelConnection) -> None:
        self._connection = connection

    async def wait_active(self) -> None:
        await self._ready

    def handle_status(self, status: ChannelStatus, error: Exception | None = None) -> None:
        if self.state is ChannelStatus.CLOSED:
            return
        if status is ChannelStatus.ACTIVE:
            if self.state is ChannelStatus.CONNECTING:
                self.state = ChannelStatus.ACTIVE
                if not self._ready.done():
                    self._ready.set_result(None)
            return
        if status is ChannelStatus.CONNECTING:
            return

        # ERROR, or a CLOSED we did not ask for.
        previous = self.state
        self.state = ChannelStatus.ERROR
        failure = TransientError(f"Live channel for {self.conversation_id} reported {status.value}")
        failure.__cause__ = error
        if not self._ready.done():
            self._ready.set_exception(failure)
        elif previous is ChannelStatus.ACTIVE:
            logger.warning("Live channel for conversation %s dropped: %s", self.conversation_id, error or status.value)
            if self._on_error is not None:
                self._loop.call_soon(self._notify_error, failure)

    def handle_insert(self, event: InsertEvent) -> None:
        if self.state is ChannelStatus.CLOSED or not event.is_insert:
            return
        if event.conversation_id != self.conversation_id:
            logger.warning(
                "Live channel for %s received an event for conversation %s; dropping",
                self.conversation_id,
                event.conversation_id,
            )
            return
        try:
            message = event.record.to_message()
        except ValidationError:
            logger.warning("Dropping malformed live event on %s", self.conversation_id, exc_info=True)
            return
        if message.id in self._seen:
            logger.debug("Live channel redelivered message %s", message.id)
            return
        self._seen.add(message.id)
        if self._resolve_sender is None:
            self._loop.call_soon(self._dispatch, message)
            return
        self._queue.put_nowait(message)
        if self._worker is None:
            self._worker = self._loop.create_task(self._drain())

    async def release(self) -> None:
        """Close the channel. Safe to call any number of times."""

        if self.state is ChannelStatus.CLOSED:
            return
        self.state = ChannelStatus.CLOSED
        if not self._ready.done():
            self._ready.cancel()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception:
            logger.exception("Failed to close live channel for conversation %s", self.conversation_id)
        logger.info("Released live channel for conversation %s", self.conversation_id)

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            if message.sender_name is None:
                message = await self._with_sender_name(message)
            self._dispatch(message)

    async def _with_sender_name(self, message: Message) -> Message:
        sender_id = message.sender_id
        if sender_id not in self._names:
            try:
                self._names[sender_id] = await self._resolve_sender(sender_id)
            except ChatSyncError as exc:
                logger.warning("Could not look up sender %s on %s: %s", sender_id, self.conversation_id, exc)
                return message
            except Exception:
                logger.exception("Sender lookup failed for %s on %s", sender_id, self.conversation_id)
                return message
        name = self._names[sender_id]
        return message.model_copy(update={"sender_name": name}) if name else message

    def _dispatch(self, message: Message) -> None:
        if self.state is ChannelStatus.CLOSED:
            return
        try:
            self._on_message(message)
        except Exception:
            logger.exception("Live message handler failed for %s", message.id)

    def _notify_error(self, error: Exception) -> None:
        if self.state is ChannelStatus.CLOSED or self._on_error is None:
            return
        self._on_error(self, error)


class LiveSubscription:
    """Open live channels and wait for them to become active."""

    def __init__(self, backend: ChatBackend, *, setup_timeout: float = 10.0) -> None:
        self._backend = backend
        self._setup_timeout = setup_timeout

    async def subscribe(
        self,
        conversation_id: str,
        on_message: MessageCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle:
        loop = asyncio.get_running_loop()
        handle = SubscriptionHandle(
            conversation_id,
            on_message,
            on_error=on_error,
            resolve_sender=self._sender_name,
            loop=loop,
        )
        connection = await self._backend.open_channel(
            conversation_id,
            on_insert=handle.handle_insert,
            on_status=handle.handle_status,
        )
        handle.attach(connection)
        try:
            await asyncio.wait_for(handle.wait_active(), timeout=self._setup_timeout)
        except asyncio.TimeoutError as exc:
            await handle.release()
            raise SubscriptionTimeout(
                f"Live channel for {conversation_id} not active after {self._setup_timeout:g}s"
            ) from exc
        except TransientError:
            await handle.release()
            raise
        except asyncio.CancelledError:
            released = handle.released
            await handle.release()
            if released:
                raise SetupCancelled(f"Live channel for {conversation_id} released during setup") from None
            raise
        logger.info("Live channel active for conversation %s", conversation_id)
        return handle

    async def _sender_name(self, user_id: str) -> str | None:
        profile = await self._backend.fetch_profile(user_id)
        if not profile:
            return None
        return profile.get("display_name") or profile.get("username")


__all__ = ["LiveSubscription", "SubscriptionHandle", "MessageCallback", "ErrorCallback", "SenderResolver"]
