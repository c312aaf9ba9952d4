"""In-memory authoritative session snapshot plus the single sequence counter."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from ccrelay.infra.observability.logger import get_logger
from ccrelay.relay.events.event_types import (
    LogicalEvent,
    ResultSummary,
    SequencedEvent,
    SessionInit,
    SessionPatch,
    SessionSnapshot,
    StatusChange,
)
from ccrelay.relay.events.replay_buffer import ReplayBuffer

logger = get_logger(__name__)


@dataclass(frozen=True)
class SnapshotView:
    """Deep-copied snapshot consistent with every event up to and including seq."""

    seq: int
    session: SessionSnapshot


class SessionStateStore:
    """Thread-safe owner of one session's snapshot, sequence counter and backlog appends."""

    def __init__(self, *, session_id: str, backlog: ReplayBuffer) -> None:
        self._lock = Lock()
        self._session_id = session_id
        self._backlog = backlog
        self._seq = 0
        self._snapshot = SessionSnapshot(session_id=session_id)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def current_seq(self) -> int:
        with self._lock:
            return self._seq

    def apply(self, event: LogicalEvent) -> SequencedEvent:
        """Assign the next sequence number, patch the snapshot and append to the backlog."""
        with self._lock:
            patched = self._patched(event)
            sequenced = SequencedEvent(seq=self._seq + 1, session_id=self._session_id, event=event)
            self._backlog.append(sequenced)
            self._seq = sequenced.seq
            self._snapshot = patched
            return sequenced

    def snapshot(self) -> SnapshotView:
        with self._lock:
            return SnapshotView(seq=self._seq, session=self._snapshot.model_copy(deep=True))

    def _patched(self, event: LogicalEvent) -> SessionSnapshot:
        current = self._snapshot
        if isinstance(event, SessionInit):
            replacement = event.session.model_copy(deep=True)
            if not replacement.session_id:
                replacement.session_id = current.session_id
            return replacement
        if isinstance(event, SessionPatch):
            known = {key: value for key, value in event.changes.items() if key in SessionSnapshot.model_fields}
            ignored = sorted(set(event.changes) - set(known))
            if ignored:
                logger.warning(
                    "relay.state.patch_unknown_fields session_id=%s fields=%s",
                    self._session_id,
                    ignored,
                )
            if not known:
                return current
            return SessionSnapshot.model_validate({**current.model_dump(), **known})
        if isinstance(event, StatusChange):
            return current.model_copy(
                update={"status": event.status, "is_compacting": event.status == "compacting"}
            )
        if isinstance(event, ResultSummary):
            return current.model_copy(
                update={
                    "total_cost_usd": event.total_cost_usd,
                    "num_turns": event.num_turns,
                    "status": "idle",
                    "is_compacting": False,
                }
            )
        return current
