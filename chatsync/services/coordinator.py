"""Conversation focus state machine owning the store and the live channel."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable
from uuid import uuid4

from pydantic import ValidationError

from ..clients.base import ChatBackend
from ..config import Settings, get_settings
from ..constants import LOCAL_ID_PREFIX, MAX_MESSAGE_LENGTH, MAX_TIMER_SECONDS
from ..errors import (
    ChatSyncError,
    InvalidRequestError,
    NoActiveConversationError,
    SendFailed,
    SetupCancelled,
)
from ..schemas import ConnectionStatus, DeliveryState, Message, MessageRow, MessageType
from .history_loader import HistoryLoader
from .live_subscription import LiveSubscription, SubscriptionHandle
from .merge_engine import MergeEngine
from .message_store import MessageStore
from .retry_scheduler import CancellationToken, EpochCounter, RetryPolicy, RetryScheduler, Sleep

logger = logging.getLogger(__name__)


class CoordinatorState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    SWITCHING_AWAY = "switching_away"
    FAILED = "failed"


StatusListener = Callable[[ConnectionStatus, CoordinatorState, "ChatSyncError | None"], None]

_ACTIVE_STATES = (CoordinatorState.LOADING, CoordinatorState.LIVE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationSwitchCoordinator:
    """Session-scoped owner of one UI surface's conversation state.

    Each instance holds the active :class:`MessageStore`, the single live
    :class:`SubscriptionHandle` and an epoch counter. Every switch or blur
    advances the epoch; async results captured under an older epoch are
    discarded instead of being applied to the new conversation.
    """

    def __init__(
        self,
        backend: ChatBackend,
        *,
        user_id: str,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = settings or get_settings()
        self.user_id = user_id
        self.store = MessageStore()
        self._backend = backend
        self._merge = MergeEngine(self.store)
        self._history = HistoryLoader(backend, user_id=user_id, page_size=settings.history_page_size)
        self._live = LiveSubscription(backend, setup_timeout=settings.subscription_setup_timeout)
        self._retry = RetryScheduler(retry_policy or RetryPolicy.from_settings(settings), sleep=sleep)
        self._clock = clock
        self._epochs = EpochCounter()
        self._conversation_id: str | None = None
        self._state = CoordinatorState.IDLE
        self._status = ConnectionStatus.IDLE
        self._last_error: ChatSyncError | None = None
        self._handle: SubscriptionHandle | None = None
        self._setup_task: asyncio.Task[None] | None = None
        self._status_listeners: list[StatusListener] = []

    # -- read side -----------------------------------------------------------------

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def last_error(self) -> ChatSyncError | None:
        return self._last_error

    @property
    def epoch(self) -> int:
        return self._epochs.current

    @property
    def subscription(self) -> SubscriptionHandle | None:
        return self._handle

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.store.snapshot()

    def is_own_message(self, message: Message) -> bool:
        return message.sender_id == self.user_id

    def on_status(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _unsubscribe

    # -- focus lifecycle -------------------------------------------------------------

    async def open_conversation(self, conversation_id: str) -> CoordinatorState:
        """Focus ``conversation_id`` and wait until it is live or has failed."""

        if not conversation_id:
            raise InvalidRequestError("conversation_id is required")

        if conversation_id == self._conversation_id and self._state in _ACTIVE_STATES:
            task = self._setup_task
            if task is not None and not task.done():
                await asyncio.wait({task})
            return self._state

        await self._switch_away()
        # Refocusing the same conversation keeps the timeline on screen and
        # still reloads history, so messages sent while blurred are merged in.
        if self.store.active_conversation_id != conversation_id:
            self.store.reset(conversation_id)
        self._conversation_id = conversation_id
        logger.info("Opening conversation %s (epoch %d)", conversation_id, self._epochs.current)
        return await self._start_setup()

    async def close_conversation(self) -> None:
        """Blur: release the channel but keep the timeline for a quick refocus."""

        await self._switch_away()
        self._transition(CoordinatorState.IDLE, ConnectionStatus.IDLE)

    async def teardown(self) -> None:
        """Terminal unmount: release everything, leave the last snapshot readable."""

        await self._switch_away()
        self._conversation_id = None
        self._transition(CoordinatorState.IDLE, ConnectionStatus.IDLE)
        self._status_listeners.clear()
        self.store.clear_listeners()

    async def retry(self) -> CoordinatorState:
        """Manual retry after setup failed."""

        if self._state is not CoordinatorState.FAILED or self._conversation_id is None:
            return self._state
        await self._switch_away()
        return await self._start_setup()

    # -- sending ---------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        message_type: MessageType = "text",
        timer_seconds: int | None = None,
        media_url: str | None = None,
    ) -> Message:
        """Optimistically append a message, then confirm it with the server copy."""

        conversation_id = self._conversation_id
        if conversation_id is None or self._state not in _ACTIVE_STATES:
            raise NoActiveConversationError("Open a conversation before sending messages")
        _validate_outgoing(content, message_type, timer_seconds, media_url)

        local = Message(
            id=f"{LOCAL_ID_PREFIX}{uuid4().hex}",
            conversation_id=conversation_id,
            sender_id=self.user_id,
            content=content,
            message_type=message_type,
            timer_seconds=timer_seconds,
            media_url=media_url,
            created_at=self._clock(),
            delivery=DeliveryState.PENDING,
        )
        self._merge.apply_optimistic(local)
        return await self._deliver(local)

    async def resend(self, local_id: str) -> Message:
        failed = self.store.get(local_id)
        if failed is None or failed.delivery is not DeliveryState.FAILED:
            raise InvalidRequestError("Only failed messages can be resent")
        pending = failed.model_copy(update={"delivery": DeliveryState.PENDING, "created_at": self._clock()})
        self.store.replace(local_id, pending)
        return await self._deliver(pending)

    async def _deliver(self, local: Message) -> Message:
        try:
            row = await self._backend.insert_message(
                local.conversation_id,
                local.sender_id,
                local.content,
                local.message_type,
                local.timer_seconds,
                local.media_url,
            )
            confirmed = MessageRow.model_validate(row).to_message()
        except (ChatSyncError, ValidationError) as exc:
            if local.id in self.store:
                self._merge.mark_failed(local.id)
            detail = exc.detail if isinstance(exc, ChatSyncError) else "invalid server response"
            logger.warning("Sending message %s failed: %s", local.id, detail)
            raise SendFailed(f"Message could not be sent: {detail}", local.id) from exc

        if local.id in self.store or self.store.active_conversation_id == confirmed.conversation_id:
            self._merge.reconcile(local.id, confirmed)
        else:
            logger.debug("Conversation changed before %s was confirmed; leaving the store alone", local.id)
        return confirmed

    # -- internals -------------------------------------------------------------------

    async def _start_setup(self) -> CoordinatorState:
        assert self._conversation_id is not None
        token = self._epochs.token()
        task = asyncio.create_task(self._setup(self._conversation_id, token))
        task.add_done_callback(_log_task_failure)
        self._setup_task = task
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore[misc]
        return self._state

    async def _setup(self, conversation_id: str, token: CancellationToken) -> None:
        self._transition(CoordinatorState.LOADING, ConnectionStatus.CONNECTING)
        try:
            history = await self._retry.run(
                lambda: self._history.load_history(conversation_id),
                token=token,
                stage="history",
            )
            if token.cancelled:
                return
            applied = self._merge.merge_many(history)
            logger.debug("Merged %d history message(s) into %s", applied, conversation_id)

            handle = await self._retry.run(
                lambda: self._live.subscribe(
                    conversation_id,
                    self._live_handler(token),
                    on_error=self._channel_error_handler(token),
                ),
                token=token,
                stage="subscription",
            )
            if token.cancelled:
                await handle.release()
                return
            self._handle = handle
            self._last_error = None
            self._transition(CoordinatorState.LIVE, ConnectionStatus.LIVE)
            logger.info("Conversation %s is live", conversation_id)
        except SetupCancelled:
            logger.debug("Setup for %s abandoned after a switch", conversation_id)
        except ChatSyncError as exc:
            if token.cancelled:
                return
            self._last_error = exc
            self._transition(CoordinatorState.FAILED, ConnectionStatus.ERROR)
            logger.warning("Conversation %s failed to load: %s", conversation_id, exc.detail)

    async def _switch_away(self) -> None:
        self._epochs.advance()
        if self._state in (*_ACTIVE_STATES, CoordinatorState.FAILED):
            self._transition(CoordinatorState.SWITCHING_AWAY, self._status)

        task, self._setup_task = self._setup_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.release()

    def _live_handler(self, token: CancellationToken) -> Callable[[Message], None]:
        def _on_message(message: Message) -> None:
            if token.cancelled:
                logger.debug("Dropping message %s from a superseded channel", message.id)
                return
            self._merge.merge(message)

        return _on_message

    def _channel_error_handler(self, token: CancellationToken) -> Callable[[SubscriptionHandle, Exception], None]:
        def _on_error(handle: SubscriptionHandle, error: Exception) -> None:
            if token.cancelled or handle is not self._handle:
                return
            self._handle = None
            logger.warning("Live channel for %s failed (%s); resubscribing", handle.conversation_id, error)
            task = asyncio.get_running_loop().create_task(self._recover(handle, token))
            task.add_done_callback(_log_task_failure)
            self._setup_task = task

        return _on_error

    async def _recover(self, handle: SubscriptionHandle, token: CancellationToken) -> None:
        await handle.release()
        if token.cancelled:
            return
        # Same epoch: the store is kept and the history reload backfills gaps.
        await self._setup(handle.conversation_id, token)

    def _transition(self, state: CoordinatorState, status: ConnectionStatus) -> None:
        if state is self._state and status is self._status:
            return
        self._state = state
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status, state, self._last_error)
            except Exception:
                logger.exception("Status listener failed")


def _validate_outgoing(
    content: str,
    message_type: MessageType,
    timer_seconds: int | None,
    media_url: str | None,
) -> None:
    if message_type == "media":
        if not media_url:
            raise InvalidRequestError("Media messages require a media_url")
    elif not (content or "").strip():
        raise InvalidRequestError("Message requires text")
    if len(content or "") > MAX_MESSAGE_LENGTH:
        raise InvalidRequestError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")
    if timer_seconds is not None and not 1 <= timer_seconds <= MAX_TIMER_SECONDS:
        raise InvalidRequestError(f"timer_seconds must be between 1 and {MAX_TIMER_SECONDS}")


def _log_task_failure(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Conversation setup task crashed", exc_info=exc)


__all__ = ["ConversationSwitchCoordinator", "CoordinatorState", "StatusListener"]
