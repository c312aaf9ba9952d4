"""Unit tests for subscriber registration, replay and fan-out delivery."""

from __future__ import annotations

import asyncio

import pytest

from ccrelay.relay.errors import ResyncRequired
from ccrelay.relay.events.event_types import StatusChange
from ccrelay.relay.events.replay_buffer import ReplayBuffer
from ccrelay.relay.runtime.fanout import SubscriberRegistry, Subscription
from ccrelay.relay.runtime.session_state import SessionStateStore


def _build_bus(*, max_queue: int = 100, backlog_size: int = 1000) -> tuple[SessionStateStore, SubscriberRegistry]:
    backlog = ReplayBuffer(max_events=backlog_size)
    store = SessionStateStore(session_id="s1", backlog=backlog)
    return store, SubscriberRegistry(store=store, backlog=backlog, max_queue=max_queue)


def _emit(store: SessionStateStore, bus: SubscriberRegistry, count: int) -> None:
    for _ in range(count):
        bus.publish(store.apply(StatusChange(status="running")))


async def _drain(subscription: Subscription, count: int) -> list[int]:
    seqs = []
    for _ in range(count):
        event = await asyncio.wait_for(subscription.next(), timeout=1)
        assert event is not None
        seqs.append(event.seq)
    return seqs


def test_replay_then_live_has_no_gaps_or_duplicates() -> None:
    async def scenario() -> list[int]:
        store, bus = _build_bus()
        _emit(store, bus, 5)
        subscription = bus.subscribe("a", 2)
        _emit(store, bus, 3)
        seqs = await _drain(subscription, 6)
        assert subscription.pending == 0
        return seqs

    assert asyncio.run(scenario()) == [3, 4, 5, 6, 7, 8]


def test_subscribe_from_snapshot_delivers_only_later_events() -> None:
    async def scenario() -> tuple[int, list[int]]:
        store, bus = _build_bus()
        _emit(store, bus, 4)
        view, subscription = bus.subscribe_from_snapshot("a")
        _emit(store, bus, 2)
        return view.seq, await _drain(subscription, 2)

    assert asyncio.run(scenario()) == (4, [5, 6])


def test_subscribe_with_evicted_cursor_raises_resync() -> None:
    store, bus = _build_bus(backlog_size=10)
    _emit(store, bus, 30)

    with pytest.raises(ResyncRequired) as excinfo:
        bus.subscribe("late", 3)

    assert excinfo.value.oldest_seq == 21
    assert excinfo.value.current_seq == 30
    assert len(bus) == 0


def test_slow_subscriber_is_marked_lagging_without_blocking_others() -> None:
    async def scenario() -> None:
        store, bus = _build_bus(max_queue=3)
        slow = bus.subscribe("slow", 0)
        fast = bus.subscribe("fast", 0)

        _emit(store, bus, 2)
        assert await _drain(fast, 2) == [1, 2]
        _emit(store, bus, 3)

        assert slow.lagging is True
        assert fast.lagging is False
        with pytest.raises(ResyncRequired) as excinfo:
            await slow.next()
        assert excinfo.value.current_seq == 4
        assert await _drain(fast, 3) == [3, 4, 5]

    asyncio.run(scenario())


def test_resubscribe_replaces_previous_subscription() -> None:
    async def scenario() -> None:
        store, bus = _build_bus()
        first = bus.subscribe("client", 0)
        _emit(store, bus, 2)
        second = bus.subscribe("client", 1)

        assert len(bus) == 1
        assert first.alive is False
        assert await _drain(second, 1) == [2]
        assert bus.unsubscribe("client", first) is False
        assert len(bus) == 1
        assert bus.unsubscribe("client", second) is True
        assert await second.next() is None

    asyncio.run(scenario())


def test_acknowledge_never_passes_delivered_seq() -> None:
    async def scenario() -> None:
        store, bus = _build_bus()
        subscription = bus.subscribe("a", 0)
        _emit(store, bus, 3)
        await _drain(subscription, 2)

        bus.acknowledge("a", 3)

        assert subscription.acked_seq == 2
        assert bus.describe()[0]["last_delivered_seq"] == 2

    asyncio.run(scenario())


def test_async_iteration_stops_on_close() -> None:
    async def scenario() -> list[int]:
        store, bus = _build_bus()
        subscription = bus.subscribe("a", 0)
        _emit(store, bus, 2)
        bus.close_all()
        return [event.seq async for event in subscription]

    assert asyncio.run(scenario()) == [1, 2]
