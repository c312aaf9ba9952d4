"""Unit tests for the bounded replay backlog."""

from __future__ import annotations

import pytest

from ccrelay.relay.errors import ResyncRequired
from ccrelay.relay.events.event_types import SequencedEvent, StatusChange
from ccrelay.relay.events.replay_buffer import ReplayBuffer


def _event(seq: int) -> SequencedEvent:
    return SequencedEvent(seq=seq, session_id="s1", event=StatusChange(status="running"))


def _filled(count: int, max_events: int = 1000) -> ReplayBuffer:
    buffer = ReplayBuffer(max_events=max_events)
    for seq in range(1, count + 1):
        buffer.append(_event(seq))
    return buffer


def test_list_events_returns_everything_after_cursor() -> None:
    buffer = _filled(5)

    assert [item.seq for item in buffer.list_events(2)] == [3, 4, 5]
    assert buffer.list_events(5) == []
    assert [item.seq for item in buffer.list_events(0)] == [1, 2, 3, 4, 5]


def test_empty_buffer_serves_cursor_zero() -> None:
    buffer = ReplayBuffer()

    assert buffer.bounds() == (1, 0)
    assert buffer.list_events(0) == []


def test_eviction_keeps_newest_events() -> None:
    buffer = _filled(25, max_events=10)

    assert len(buffer) == 10
    assert buffer.bounds() == (16, 25)
    assert [item.seq for item in buffer.list_events(15)] == list(range(16, 26))


def test_cursor_behind_retention_requires_resync() -> None:
    buffer = _filled(25, max_events=10)

    with pytest.raises(ResyncRequired) as excinfo:
        buffer.list_events(14)

    assert excinfo.value.oldest_seq == 16
    assert excinfo.value.current_seq == 25


@pytest.mark.parametrize("cursor", [-1, 6])
def test_invalid_cursor_requires_resync(cursor: int) -> None:
    buffer = _filled(5)

    with pytest.raises(ResyncRequired):
        buffer.list_events(cursor)


def test_append_rejects_gaps() -> None:
    buffer = _filled(3)

    with pytest.raises(ValueError, match="non_contiguous_seq"):
        buffer.append(_event(5))
