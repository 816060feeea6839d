"""Conversation switching, live merge and optimistic send scenarios."""
from __future__ import annotations

import asyncio

import pytest

from chatsync.errors import (
    InvalidRequestError,
    NoActiveConversationError,
    NotFoundError,
    SendFailed,
    SetupFailed,
    TransientError,
)
from chatsync.schemas import ConnectionStatus, DeliveryState
from chatsync.services import CoordinatorState

from conftest import make_row, settle


def test_live_message_lands_between_history_entries(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_message("A", "1", 10)
    backend.add_message("A", "2", 20)
    coordinator = make_coordinator(backend)

    async def scenario():
        state = await coordinator.open_conversation("A")
        backend.emit("A", make_row("A", "3", 15))
        await settle()
        return state

    state = asyncio.run(scenario())

    assert state is CoordinatorState.LIVE
    assert coordinator.status is ConnectionStatus.LIVE
    assert coordinator.store.ids() == ["1", "3", "2"]


def test_switch_during_history_load_discards_late_results(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_conversation("B")
    backend.add_message("A", "a1", 10)
    backend.add_message("B", "b1", 10)
    coordinator = make_coordinator(backend)

    async def scenario():
        gate = backend.block_history("A")
        opening_a = asyncio.create_task(coordinator.open_conversation("A"))
        await settle()
        assert coordinator.state is CoordinatorState.LOADING

        await coordinator.open_conversation("B")
        gate.set()
        await settle()
        await opening_a

    asyncio.run(scenario())

    assert coordinator.conversation_id == "B"
    assert coordinator.state is CoordinatorState.LIVE
    assert coordinator.store.active_conversation_id == "B"
    assert coordinator.store.ids() == ["b1"]
    assert backend.open_calls == ["B"]
    assert [channel.conversation_id for channel in backend.open_channels()] == ["B"]


def test_events_for_other_conversation_never_render(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_message("A", "a1", 10)
    coordinator = make_coordinator(backend)

    async def scenario():
        await coordinator.open_conversation("A")
        backend.open_channels("A")[0].push(make_row("B", "b9", 12))
        await settle()

    asyncio.run(scenario())

    assert coordinator.store.ids() == ["a1"]


def test_transient_history_failures_are_retried_then_live(backend, make_coordinator, recording_sleep):
    backend.add_conversation("A")
    backend.add_message("A", "a1", 10)
    backend.history_failures["A"] = [TransientError("offline"), TransientError("offline")]
    coordinator = make_coordinator(backend)

    state = asyncio.run(coordinator.open_conversation("A"))

    assert state is CoordinatorState.LIVE
    assert recording_sleep.delays == [1.0, 2.0]
    assert coordinator.store.ids() == ["a1"]


def test_exhausted_retries_surface_failed_state(backend, make_coordinator, recording_sleep):
    backend.add_conversation("A")
    backend.history_failures["A"] = [TransientError("offline")] * 3
    coordinator = make_coordinator(backend)
    statuses: list[ConnectionStatus] = []
    coordinator.on_status(lambda status, state, error: statuses.append(status))

    state = asyncio.run(coordinator.open_conversation("A"))

    assert state is CoordinatorState.FAILED
    assert coordinator.status is ConnectionStatus.ERROR
    assert isinstance(coordinator.last_error, SetupFailed)
    assert coordinator.last_error.attempts == 3
    assert recording_sleep.delays == [1.0, 2.0]
    assert len(backend.fetch_calls) == 3
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.ERROR]
    assert backend.open_calls == []


def test_missing_conversation_fails_without_retry(backend, make_coordinator, recording_sleep):
    coordinator = make_coordinator(backend)

    state = asyncio.run(coordinator.open_conversation("ghost"))

    assert state is CoordinatorState.FAILED
    assert isinstance(coordinator.last_error, NotFoundError)
    assert recording_sleep.delays == []


def test_manual_retry_after_failure(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_message("A", "a1", 10)
    backend.history_failures["A"] = [TransientError("offline")] * 3
    coordinator = make_coordinator(backend)

    async def scenario():
        first = await coordinator.open_conversation("A")
        second = await coordinator.retry()
        return first, second

    first, second = asyncio.run(scenario())

    assert first is CoordinatorState.FAILED
    assert second is CoordinatorState.LIVE
    assert coordinator.last_error is None
    assert coordinator.store.ids() == ["a1"]


def test_subscription_timeouts_exhaust_retries(backend, make_coordinator):
    backend.add_conversation("A")
    backend.auto_activate = False
    coordinator = make_coordinator(backend)

    state = asyncio.run(coordinator.open_conversation("A"))

    assert state is CoordinatorState.FAILED
    assert coordinator.last_error.stage == "subscription"
    assert len(backend.channels) == 3
    assert backend.open_channels() == []


def test_a_b_a_switch_leaves_one_channel_and_only_a_messages(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_conversation("B")
    backend.add_message("A", "a1", 10)
    backend.add_message("B", "b1", 10)
    coordinator = make_coordinator(backend)

    async def scenario():
        await coordinator.open_conversation("A")
        first_a = backend.open_channels("A")[0]
        await coordinator.open_conversation("B")
        await coordinator.open_conversation("A")
        first_a.push(make_row("A", "stale", 30))
        backend.emit("A", make_row("A", "a2", 20))
        await settle()

    asyncio.run(scenario())

    assert coordinator.state is CoordinatorState.LIVE
    assert [channel.conversation_id for channel in backend.open_channels()] == ["A"]
    assert sum(1 for channel in backend.channels if channel.closed) == 2
    assert coordinator.store.ids() == ["a1", "a2"]
    assert coordinator.epoch == 3


def test_reopening_same_conversation_while_live_is_a_no_op(backend, make_coordinator):
    backend.add_conversation("A")
    coordinator = make_coordinator(backend)

    async def scenario():
        await coordinator.open_conversation("A")
        await coordinator.open_conversation("A")

    asyncio.run(scenario())

    assert backend.open_calls == ["A"]
    assert coordinator.epoch == 1


def test_refocus_keeps_timeline_visible_and_backfills_missed_messages(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_message("A", "a1", 10)
    coordinator = make_coordinator(backend)
    sizes: list[int] = []

    async def scenario():
        await coordinator.open_conversation("A")
        old_channel = backend.open_channels("A")[0]
        await coordinator.close_conversation()
        assert coordinator.state is CoordinatorState.IDLE
        assert coordinator.status is ConnectionStatus.IDLE
        assert old_channel.closed

        old_channel.push(make_row("A", "ignored", 11))
        backend.add_message("A", "a2", 20)
        await settle()
        assert coordinator.store.ids() == ["a1"]

        coordinator.store.subscribe(lambda snapshot: sizes.append(len(snapshot)))
        await coordinator.open_conversation("A")

    asyncio.run(scenario())

    assert coordinator.state is CoordinatorState.LIVE
    assert coordinator.store.ids() == ["a1", "a2"]
    assert len(backend.open_channels()) == 1
    # The store is never emptied during refocus, only extended.
    assert sizes == [2]


def test_teardown_releases_everything_and_keeps_snapshot(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_message("A", "a1", 10)
    coordinator = make_coordinator(backend)
    statuses: list[ConnectionStatus] = []
    coordinator.on_status(lambda status, state, error: statuses.append(status))

    async def scenario():
        await coordinator.open_conversation("A")
        await coordinator.teardown()

    asyncio.run(scenario())

    assert coordinator.conversation_id is None
    assert coordinator.subscription is None
    assert backend.open_channels() == []
    assert [message.id for message in coordinator.messages] == ["a1"]
    assert statuses[-1] is ConnectionStatus.IDLE


def test_channel_error_resubscribes_and_backfills(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_message("A", "a1", 10)
    coordinator = make_coordinator(backend)
    statuses: list[ConnectionStatus] = []

    async def scenario():
        await coordinator.open_conversation("A")
        coordinator.on_status(lambda status, state, error: statuses.append(status))
        backend.add_message("A", "missed", 20)
        backend.open_channels("A")[0].fail(ConnectionError("socket reset"))
        await settle(60)

    asyncio.run(scenario())

    assert coordinator.state is CoordinatorState.LIVE
    assert coordinator.store.ids() == ["a1", "missed"]
    assert len(backend.open_channels()) == 1
    assert len(backend.channels) == 2
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.LIVE]


def test_send_reconciles_optimistic_entry(backend, make_coordinator):
    backend.add_conversation("A")
    backend.add_message("A", "a1", 10)
    coordinator = make_coordinator(backend)
    snapshots: list[list[tuple[str, str]]] = []

    async def scenario():
        await coordinator.open_conversation("A")
        coordinator.store.subscribe(
            lambda snapshot: snapshots.append([(item.id, item.delivery.value) for item in snapshot])
        )
        confirmed = await coordinator.send_message("hello team")
        await settle()
        return confirmed

    confirmed = asyncio.run(scenario())

    assert snapshots[0][-1][0].startswith("local-")
    assert snapshots[0][-1][1] == "pending"
    assert coordinator.store.ids() == ["a1", confirmed.id]
    assert coordinator.store.get(confirmed.id).delivery is DeliveryState.SENT
    assert coordinator.is_own_message(confirmed)


def test_echo_arriving_before_insert_response_renders_once(backend, make_coordinator):
    backend.add_conversation("A")
    coordinator = make_coordinator(backend)

    async def scenario():
        await coordinator.open_conversation("A")
        backend.insert_gate = asyncio.Event()
        sending = asyncio.create_task(coordinator.send_message("hi"))
        await settle()
        echoed = coordinator.store.ids()
        backend.insert_gate.set()
        confirmed = await sending
        return echoed, confirmed

    echoed, confirmed = asyncio.run(scenario())

    assert echoed == [confirmed.id]
    assert coordinator.store.ids() == [confirmed.id]


def test_failed_send_is_marked_and_can_be_resent(backend, make_coordinator):
    backend.add_conversation("A")
    backend.insert_failures = [TransientError("offline")]
    coordinator = make_coordinator(backend)

    async def scenario():
        await coordinator.open_conversation("A")
        with pytest.raises(SendFailed) as excinfo:
            await coordinator.send_message("are you there?")
        local_id = excinfo.value.local_id
        assert coordinator.store.get(local_id).delivery is DeliveryState.FAILED
        confirmed = await coordinator.resend(local_id)
        await settle()
        return local_id, confirmed

    local_id, confirmed = asyncio.run(scenario())

    assert local_id not in coordinator.store
    assert coordinator.store.ids() == [confirmed.id]
    assert confirmed.content == "are you there?"


def test_send_requires_open_conversation_and_valid_content(backend, make_coordinator):
    backend.add_conversation("A")
    coordinator = make_coordinator(backend)

    async def scenario():
        with pytest.raises(NoActiveConversationError):
            await coordinator.send_message("hello")
        await coordinator.open_conversation("A")
        with pytest.raises(InvalidRequestError):
            await coordinator.send_message("   ")
        with pytest.raises(InvalidRequestError):
            await coordinator.send_message("x" * 2001)
        with pytest.raises(InvalidRequestError):
            await coordinator.send_message("", message_type="media")
        with pytest.raises(InvalidRequestError):
            await coordinator.send_message("boom", timer_seconds=0)

    asyncio.run(scenario())

    assert len(coordinator.store) == 0


def test_resend_rejects_unknown_or_pending_ids(backend, make_coordinator):
    backend.add_conversation("A")
    coordinator = make_coordinator(backend)

    async def scenario():
        await coordinator.open_conversation("A")
        with pytest.raises(InvalidRequestError):
            await coordinator.resend("local-missing")

    asyncio.run(scenario())
