"""Ordered, id-unique message timeline for the active conversation."""
from __future__ import annotations

import bisect
import logging
from typing import Callable, Iterator, Sequence

from ..errors import CrossConversationEvent, DuplicateIgnored
from ..schemas import DeliveryState, Message

logger = logging.getLogger(__name__)

StoreListener = Callable[[Sequence[Message]], None]


def _sort_key(message: Message):
    return message.created_at


class MessageStore:
    """Messages of one conversation, sorted by ``created_at`` with unique ids.

    The ordered list is paired with a dict index so membership checks stay
    O(1). Messages sharing a timestamp keep their arrival order. Listeners
    receive an immutable snapshot after every change.
    """

    def __init__(self, conversation_id: str | None = None) -> None:
        self._conversation_id = conversation_id
        self._messages: list[Message] = []
        self._index: dict[str, Message] = {}
        self._listeners: list[StoreListener] = []
        self._version = 0

    @property
    def active_conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def version(self) -> int:
        """Monotonic change counter, bumped on every mutation."""

        return self._version

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    def get(self, message_id: str) -> Message | None:
        return self._index.get(message_id)

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def ids(self) -> list[str]:
        return [message.id for message in self._messages]

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def reset(self, conversation_id: str | None) -> None:
        """Drop every message and rebind the store to ``conversation_id``."""

        self._conversation_id = conversation_id
        self._messages = []
        self._index = {}
        self._changed()

    def insert(self, message: Message) -> int:
        """Insert ``message`` at its sorted position and return that position.

        Raises :class:`CrossConversationEvent` for messages of another
        conversation and :class:`DuplicateIgnored` for known ids.
        """

        self._check(message)
        position = self._place(message)
        self._changed()
        return position

    def remove(self, message_id: str) -> Message | None:
        message = self._index.pop(message_id, None)
        if message is None:
            return None
        self._messages.remove(message)
        self._changed()
        return message

    def replace(self, message_id: str, replacement: Message) -> int:
        """Swap a stored entry for ``replacement`` in one change notification."""

        original = self._index.get(message_id)
        if original is None:
            return self.insert(replacement)
        self._check(replacement, replacing=message_id)
        del self._index[message_id]
        self._messages.remove(original)
        position = self._place(replacement)
        self._changed()
        return position

    def find_pending_match(self, message: Message) -> Message | None:
        """Return the oldest local entry that ``message`` confirms, if any."""

        for candidate in self._messages:
            if candidate.delivery is DeliveryState.SENT or not candidate.is_local:
                continue
            if (
                candidate.sender_id == message.sender_id
                and candidate.message_type == message.message_type
                and candidate.content == message.content
            ):
                return candidate
        return None

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unregisters it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def clear_listeners(self) -> None:
        self._listeners.clear()

    def _check(self, message: Message, *, replacing: str | None = None) -> None:
        if message.conversation_id != self._conversation_id:
            raise CrossConversationEvent(
                f"Message belongs to conversation {message.conversation_id}, store holds {self._conversation_id}",
                message.id,
                message.conversation_id,
            )
        if message.id in self._index and message.id != replacing:
            raise DuplicateIgnored(f"Message {message.id} already stored", message.id)

    def _place(self, message: Message) -> int:
        last = self.last
        if last is None or last.created_at <= message.created_at:
            position = len(self._messages)
            self._messages.append(message)
        else:
            # Out-of-order arrival: land after any entries sharing the timestamp.
            position = bisect.bisect_right(self._messages, message.created_at, key=_sort_key)
            self._messages.insert(position, message)
        self._index[message.id] = message
        return position

    def _changed(self) -> None:
        self._version += 1
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Message store listener failed")


__all__ = ["MessageStore", "StoreListener"]
