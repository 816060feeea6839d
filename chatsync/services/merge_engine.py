"""Reconcile history loads, live events and local sends into the message store."""
from __future__ import annotations

import logging
from typing import Iterable

from ..errors import CrossConversationEvent, DuplicateIgnored
from ..schemas import DeliveryState, Message
from .message_store import MessageStore

logger = logging.getLogger(__name__)


class MergeEngine:
    """Apply incoming messages to a :class:`MessageStore`.

    The store enforces ordering and id uniqueness; this layer decides what to
    do when it refuses a message. Refusals are logged and reported as
    ``False`` so a bad event never reaches the UI as an error.
    """

    def __init__(self, store: MessageStore) -> None:
        self._store = store

    @property
    def store(self) -> MessageStore:
        return self._store

    def merge(self, incoming: Message) -> bool:
        """Merge one message; return ``True`` if the timeline changed."""

        store = self._store
        if incoming.id in store:
            logger.debug("Dropped duplicate message %s", incoming.id)
            return False

        if incoming.conversation_id == store.active_conversation_id and not incoming.is_local:
            pending = store.find_pending_match(incoming)
            if pending is not None:
                store.replace(pending.id, incoming)
                logger.debug("Confirmed local message %s as %s", pending.id, incoming.id)
                return True

        try:
            store.insert(incoming)
        except DuplicateIgnored:
            logger.debug("Dropped duplicate message %s", incoming.id)
            return False
        except CrossConversationEvent as exc:
            logger.warning(
                "Dropped message %s for conversation %s while %s is active",
                exc.message_id,
                exc.conversation_id,
                store.active_conversation_id,
            )
            return False
        return True

    def merge_many(self, messages: Iterable[Message]) -> int:
        """Merge a batch in order and return how many were applied."""

        applied = 0
        for message in messages:
            if self.merge(message):
                applied += 1
        return applied

    def apply_optimistic(self, message: Message) -> bool:
        """Insert a locally created pending message ahead of server confirmation."""

        if not message.is_local:
            raise ValueError("Optimistic messages must carry a local id")
        return self.merge(message)

    def reconcile(self, local_id: str, confirmed: Message) -> bool:
        """Replace the pending entry ``local_id`` with its server copy.

        If the live echo already confirmed the message, the pending entry is
        gone and the server copy is a duplicate; nothing changes.
        """

        store = self._store
        if local_id in store:
            if confirmed.id in store:
                store.remove(local_id)
                return True
            try:
                store.replace(local_id, confirmed)
            except CrossConversationEvent:
                logger.warning("Confirmed message %s no longer matches the active conversation", confirmed.id)
                return False
            return True
        return self.merge(confirmed)

    def mark_failed(self, local_id: str) -> Message | None:
        """Flag a pending entry as failed so the UI can offer a resend."""

        pending = self._store.get(local_id)
        if pending is None:
            return None
        failed = pending.model_copy(update={"delivery": DeliveryState.FAILED})
        self._store.replace(local_id, failed)
        return failed

    def discard_local(self, local_id: str) -> Message | None:
        message = self._store.get(local_id)
        if message is None or not message.is_local:
            return None
        return self._store.remove(local_id)


__all__ = ["MergeEngine"]
