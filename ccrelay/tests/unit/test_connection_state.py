"""Unit tests for the connection state machine and backoff policy."""

from __future__ import annotations

import pytest

from ccrelay.relay.upstream.connection_state import BackoffPolicy, ConnectionStateMachine


def test_backoff_grows_and_caps() -> None:
    policy = BackoffPolicy(initial_seconds=0.5, max_seconds=3.0, multiplier=2.0)

    assert [policy.delay(attempt) for attempt in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_backoff_gives_up_after_max_attempts() -> None:
    policy = BackoffPolicy(max_attempts=2)

    assert policy.delay(2) is not None
    assert policy.delay(3) is None


def test_lifecycle_transitions_and_callbacks() -> None:
    changes: list[tuple[str, str]] = []
    machine = ConnectionStateMachine(name="test", on_change=lambda old, new: changes.append((old, new)))

    machine.begin_connect()
    machine.mark_disconnected()
    machine.begin_connect()
    assert machine.attempts == 2
    machine.mark_connected()
    assert machine.attempts == 0
    machine.mark_disconnected()
    machine.mark_disconnected()

    assert changes == [
        ("disconnected", "connecting"),
        ("connecting", "disconnected"),
        ("disconnected", "connecting"),
        ("connecting", "connected"),
        ("connected", "disconnected"),
    ]
    assert machine.state == "disconnected"


def test_invalid_transition_raises() -> None:
    machine = ConnectionStateMachine(name="test")

    with pytest.raises(RuntimeError, match="invalid_transition"):
        machine.mark_connected()


def test_next_delay_follows_attempt_count() -> None:
    machine = ConnectionStateMachine(name="test", backoff=BackoffPolicy(initial_seconds=1.0, max_attempts=2))

    machine.begin_connect()
    machine.mark_disconnected()
    assert machine.next_delay() == 2.0
    machine.begin_connect()
    machine.mark_disconnected()
    assert machine.next_delay() is None
