"""Subscriber registry and fan-out bus with per-subscriber ordered queues and replay."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Literal

from ccrelay.infra.observability.logger import get_logger
from ccrelay.relay.errors import ResyncRequired
from ccrelay.relay.events.event_types import SequencedEvent
from ccrelay.relay.events.replay_buffer import ReplayBuffer
from ccrelay.relay.runtime.session_state import SessionStateStore, SnapshotView

logger = get_logger(__name__)

OfferResult = Literal["queued", "duplicate", "overflow", "closed"]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class _ResyncSignal:
    oldest_seq: int
    current_seq: int


class Subscription:
    """One subscriber's delivery cursor and queue; iterate it to receive events in order."""

    def __init__(self, *, subscriber_id: str, last_seq: int, max_queue: int) -> None:
        self.subscriber_id = subscriber_id
        self.connected_at = _utc_now_iso()
        self.last_delivered_seq = last_seq
        self.acked_seq = last_seq
        self.alive = True
        self.lagging = False
        self._max_queue = max(1, max_queue)
        self._last_enqueued_seq = last_seq
        self._queue: asyncio.Queue[SequencedEvent | _ResyncSignal | None] = asyncio.Queue()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, event: SequencedEvent, *, replay: bool = False) -> OfferResult:
        if not self.alive or self.lagging:
            return "closed"
        if event.seq <= self._last_enqueued_seq:
            return "duplicate"
        if event.seq != self._last_enqueued_seq + 1:
            return "overflow"
        if not replay and self._queue.qsize() >= self._max_queue:
            return "overflow"
        self._queue.put_nowait(event)
        self._last_enqueued_seq = event.seq
        return "queued"

    def mark_lagging(self, *, oldest_seq: int, current_seq: int) -> None:
        """Drop queued events and deliver an explicit resync signal instead."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self.lagging = True
        self._queue.put_nowait(_ResyncSignal(oldest_seq=oldest_seq, current_seq=current_seq))

    def close(self) -> None:
        if not self.alive:
            return
        self.alive = False
        self._queue.put_nowait(None)

    async def next(self) -> SequencedEvent | None:
        """Return the next event, None once closed; raise ResyncRequired if lagging."""
        item = await self._queue.get()
        if item is None:
            return None
        if isinstance(item, _ResyncSignal):
            raise ResyncRequired(
                requested_seq=self.last_delivered_seq,
                oldest_seq=item.oldest_seq,
                current_seq=item.current_seq,
            )
        self.last_delivered_seq = item.seq
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> SequencedEvent:
        item = await self.next()
        if item is None:
            raise StopAsyncIteration
        return item


class SubscriberRegistry:
    """Fan-out bus: every registered subscriber receives every event in sequence order."""

    def __init__(
        self,
        *,
        store: SessionStateStore,
        backlog: ReplayBuffer,
        max_queue: int = 2000,
    ) -> None:
        self._store = store
        self._backlog = backlog
        self._max_queue = max(1, max_queue)
        self._subscribers: dict[str, Subscription] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, subscriber_id: str, last_seq: int) -> Subscription:
        """Register a subscriber, replaying every backlog event with seq > last_seq first."""
        with self._lock:
            replay = self._backlog.list_events(last_seq)
            subscription = Subscription(
                subscriber_id=subscriber_id, last_seq=last_seq, max_queue=self._max_queue
            )
            for event in replay:
                subscription.offer(event, replay=True)
            self._register_locked(subscription)
        logger.info(
            "relay.bus.subscribe session_id=%s subscriber=%s last_seq=%s replayed=%s",
            self._store.session_id,
            subscriber_id,
            last_seq,
            len(replay),
        )
        return subscription

    def subscribe_from_snapshot(self, subscriber_id: str) -> tuple[SnapshotView, Subscription]:
        """Pair a snapshot with live delivery of every event after the snapshot's seq."""
        with self._lock:
            view = self._store.snapshot()
            subscription = Subscription(
                subscriber_id=subscriber_id, last_seq=view.seq, max_queue=self._max_queue
            )
            for event in self._backlog.list_events(view.seq):
                subscription.offer(event, replay=True)
            self._register_locked(subscription)
        logger.info(
            "relay.bus.subscribe_snapshot session_id=%s subscriber=%s seq=%s",
            self._store.session_id,
            subscriber_id,
            view.seq,
        )
        return view, subscription

    def publish(self, event: SequencedEvent) -> int:
        """Offer the event to every subscriber without awaiting any of them."""
        with self._lock:
            subscriptions = list(self._subscribers.values())
        delivered = 0
        for subscription in subscriptions:
            outcome = subscription.offer(event)
            if outcome == "queued":
                delivered += 1
            elif outcome == "overflow":
                oldest, newest = self._backlog.bounds()
                subscription.mark_lagging(oldest_seq=oldest, current_seq=newest)
                logger.warning(
                    "relay.bus.subscriber_lagging session_id=%s subscriber=%s seq=%s pending_limit=%s",
                    self._store.session_id,
                    subscription.subscriber_id,
                    event.seq,
                    self._max_queue,
                )
        return delivered

    def unsubscribe(self, subscriber_id: str, subscription: Subscription | None = None) -> bool:
        """Remove a subscriber; a stale handle never removes its replacement."""
        with self._lock:
            current = self._subscribers.get(subscriber_id)
            if current is None or (subscription is not None and current is not subscription):
                if subscription is not None:
                    subscription.close()
                return False
            del self._subscribers[subscriber_id]
        current.close()
        logger.info(
            "relay.bus.unsubscribe session_id=%s subscriber=%s delivered_seq=%s",
            self._store.session_id,
            subscriber_id,
            current.last_delivered_seq,
        )
        return True

    def acknowledge(self, subscriber_id: str, seq: int) -> None:
        with self._lock:
            subscription = self._subscribers.get(subscriber_id)
            if subscription is not None and seq > subscription.acked_seq:
                subscription.acked_seq = min(seq, subscription.last_delivered_seq)

    def describe(self) -> list[dict[str, object]]:
        with self._lock:
            subscriptions = list(self._subscribers.values())
        return [
            {
                "subscriber_id": item.subscriber_id,
                "connected_at": item.connected_at,
                "last_delivered_seq": item.last_delivered_seq,
                "acked_seq": item.acked_seq,
                "pending": item.pending,
                "lagging": item.lagging,
            }
            for item in subscriptions
        ]

    def close_all(self) -> None:
        with self._lock:
            subscriptions = list(self._subscribers.values())
            self._subscribers.clear()
        for subscription in subscriptions:
            subscription.close()

    def _register_locked(self, subscription: Subscription) -> None:
        previous = self._subscribers.get(subscription.subscriber_id)
        self._subscribers[subscription.subscriber_id] = subscription
        if previous is not None:
            previous.close()
            logger.info(
                "relay.bus.subscriber_replaced session_id=%s subscriber=%s",
                self._store.session_id,
                subscription.subscriber_id,
            )
