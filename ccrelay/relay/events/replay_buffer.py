"""Event layer: bounded in-memory backlog for subscriber replay after reconnect."""

from __future__ import annotations

from collections import deque
from itertools import islice
from threading import Lock

from ccrelay.relay.errors import ResyncRequired
from ccrelay.relay.events.event_types import SequencedEvent


class ReplayBuffer:
    """Keep the most recent sequenced events and serve replay from a last-seen seq.

    Retention is size-bounded. A replay cursor older than the oldest retained
    event, or ahead of the newest one, cannot be served incrementally and
    raises ResyncRequired instead of silently skipping events.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self._max_events = max(10, max_events)
        self._events: deque[SequencedEvent] = deque(maxlen=self._max_events)
        self._lock = Lock()

    @property
    def max_events(self) -> int:
        return self._max_events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def append(self, event: SequencedEvent) -> None:
        """Append the next event; sequence numbers must stay contiguous."""
        with self._lock:
            if self._events and event.seq != self._events[-1].seq + 1:
                raise ValueError(
                    f"non_contiguous_seq:expected={self._events[-1].seq + 1},got={event.seq}"
                )
            self._events.append(event)

    def bounds(self) -> tuple[int, int]:
        """Return (oldest retained seq, newest seq); (1, 0) while empty."""
        with self._lock:
            return self._bounds_locked()

    def list_events(self, last_seq: int) -> list[SequencedEvent]:
        """List buffered events with seq > last_seq, or raise ResyncRequired."""
        with self._lock:
            oldest, newest = self._bounds_locked()
            if last_seq < 0 or last_seq > newest or last_seq + 1 < oldest:
                raise ResyncRequired(requested_seq=last_seq, oldest_seq=oldest, current_seq=newest)
            if last_seq == newest:
                return []
            return list(islice(self._events, last_seq + 1 - oldest, None))

    def _bounds_locked(self) -> tuple[int, int]:
        if not self._events:
            return 1, 0
        return self._events[0].seq, self._events[-1].seq
