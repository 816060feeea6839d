"""Merge rules: dedup, isolation and optimistic reconciliation."""
from __future__ import annotations

import pytest

from chatsync.schemas import DeliveryState, Message
from chatsync.services import MergeEngine, MessageStore

from conftest import ts


def _message(message_id: str, seconds: float, conversation_id: str = "A", **kwargs) -> Message:
    kwargs.setdefault("sender_id", "bob")
    kwargs.setdefault("content", f"message {message_id}")
    return Message(id=message_id, conversation_id=conversation_id, created_at=ts(seconds), **kwargs)


@pytest.fixture
def engine() -> MergeEngine:
    return MergeEngine(MessageStore("A"))


def test_merge_is_idempotent(engine):
    message = _message("1", 10)

    assert engine.merge(message) is True
    assert engine.merge(message) is False
    assert engine.merge(message.model_copy()) is False
    assert engine.store.ids() == ["1"]


def test_history_then_live_redelivery_renders_once(engine):
    history = [_message("1", 10), _message("2", 20)]
    assert engine.merge_many(history) == 2

    assert engine.merge(_message("3", 15)) is True
    assert engine.merge(_message("2", 20)) is False
    assert engine.store.ids() == ["1", "3", "2"]


def test_other_conversation_is_never_inserted(engine):
    assert engine.merge(_message("9", 10, conversation_id="B")) is False
    assert len(engine.store) == 0


def test_apply_optimistic_requires_local_id(engine):
    with pytest.raises(ValueError):
        engine.apply_optimistic(_message("srv-1", 10))


def test_echo_replaces_pending_entry(engine):
    engine.merge(_message("1", 10))
    local = _message("local-1", 50, sender_id="alice", content="hello", delivery=DeliveryState.PENDING)
    engine.apply_optimistic(local)

    echo = _message("srv-7", 40, sender_id="alice", content="hello")
    assert engine.merge(echo) is True

    assert engine.store.ids() == ["1", "srv-7"]
    assert engine.store.get("srv-7").delivery is DeliveryState.SENT


def test_reconcile_after_echo_leaves_single_copy(engine):
    local = _message("local-1", 50, sender_id="alice", content="hello", delivery=DeliveryState.PENDING)
    engine.apply_optimistic(local)
    confirmed = _message("srv-7", 40, sender_id="alice", content="hello")

    engine.merge(confirmed)
    assert engine.reconcile("local-1", confirmed) is False

    assert engine.store.ids() == ["srv-7"]


def test_reconcile_before_echo_then_echo_is_duplicate(engine):
    local = _message("local-1", 50, sender_id="alice", content="hello", delivery=DeliveryState.PENDING)
    engine.apply_optimistic(local)
    confirmed = _message("srv-7", 40, sender_id="alice", content="hello")

    assert engine.reconcile("local-1", confirmed) is True
    assert engine.merge(confirmed) is False

    assert engine.store.ids() == ["srv-7"]


def test_mark_failed_and_discard_local(engine):
    local = _message("local-1", 50, sender_id="alice", content="hello", delivery=DeliveryState.PENDING)
    engine.apply_optimistic(local)

    failed = engine.mark_failed("local-1")
    assert failed is not None and failed.delivery is DeliveryState.FAILED
    assert engine.store.get("local-1").delivery is DeliveryState.FAILED

    assert engine.discard_local("local-1") is not None
    assert len(engine.store) == 0
    assert engine.mark_failed("local-1") is None
