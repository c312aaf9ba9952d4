"""Unit tests for the session state store and snapshot patching."""

from __future__ import annotations

from ccrelay.relay.events.event_types import (
    ResultSummary,
    SessionInit,
    SessionPatch,
    SessionSnapshot,
    StatusChange,
    StreamDelta,
)
from ccrelay.relay.events.replay_buffer import ReplayBuffer
from ccrelay.relay.runtime.session_state import SessionStateStore


def _build_store() -> SessionStateStore:
    return SessionStateStore(session_id="relay-1", backlog=ReplayBuffer())


def test_sequence_numbers_are_gap_free_and_backlogged() -> None:
    store = _build_store()

    seqs = [store.apply(StatusChange(status="running")).seq for _ in range(4)]

    assert seqs == [1, 2, 3, 4]
    assert store.current_seq == 4
    assert store.snapshot().seq == 4


def test_session_init_replaces_snapshot() -> None:
    store = _build_store()
    store.apply(StatusChange(status="running"))

    store.apply(SessionInit(session=SessionSnapshot(session_id="cli-1", model="claude-opus", status="idle")))

    view = store.snapshot()
    assert view.seq == 2
    assert view.session.session_id == "cli-1"
    assert view.session.model == "claude-opus"
    assert view.session.status == "idle"


def test_session_init_without_id_keeps_relay_session_id() -> None:
    store = _build_store()

    store.apply(SessionInit(session=SessionSnapshot(model="claude-opus")))

    assert store.snapshot().session.session_id == "relay-1"


def test_patch_applies_known_fields_only() -> None:
    store = _build_store()

    store.apply(SessionPatch(changes={"model": "claude-haiku", "bogus": 1}))

    session = store.snapshot().session
    assert session.model == "claude-haiku"
    assert not hasattr(session, "bogus")


def test_status_and_result_update_snapshot() -> None:
    store = _build_store()

    store.apply(StatusChange(status="compacting"))
    assert store.snapshot().session.is_compacting is True

    store.apply(ResultSummary(num_turns=4, total_cost_usd=0.5))
    session = store.snapshot().session
    assert session.status == "idle"
    assert session.is_compacting is False
    assert session.num_turns == 4
    assert session.total_cost_usd == 0.5


def test_non_state_events_still_get_sequenced() -> None:
    store = _build_store()

    sequenced = store.apply(StreamDelta(index=0, kind="text_delta", block_kind="text", text="hi"))

    assert sequenced.seq == 1
    assert sequenced.to_wire()["seq"] == 1
    assert sequenced.to_wire()["type"] == "stream_delta"
    assert store.snapshot().session == SessionSnapshot(session_id="relay-1")


def test_snapshot_is_a_copy() -> None:
    store = _build_store()
    store.apply(SessionInit(session=SessionSnapshot(session_id="cli-1", tools=["Bash"])))

    view = store.snapshot()
    view.session.tools.append("Write")

    assert store.snapshot().session.tools == ["Bash"]
