"""Connection lifecycle state machine with a bounded exponential backoff policy."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from ccrelay.infra.observability.logger import get_logger

logger = get_logger(__name__)

ConnectionState = Literal["disconnected", "connecting", "connected"]

_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    "disconnected": {"connecting"},
    "connecting": {"connected", "disconnected"},
    "connected": {"disconnected"},
}


@dataclass(frozen=True)
class BackoffPolicy:
    initial_seconds: float = 0.5
    max_seconds: float = 30.0
    multiplier: float = 2.0
    max_attempts: int | None = None

    def delay(self, attempt: int) -> float | None:
        """Delay before the given 1-based attempt, or None once attempts are exhausted."""
        if self.max_attempts is not None and attempt > self.max_attempts:
            return None
        raw = self.initial_seconds * (self.multiplier ** max(0, attempt - 1))
        return min(self.max_seconds, raw)


class ConnectionStateMachine:
    """disconnected -> connecting -> connected, and back to disconnected from either."""

    def __init__(
        self,
        *,
        name: str,
        backoff: BackoffPolicy | None = None,
        on_change: Callable[[ConnectionState, ConnectionState], None] | None = None,
    ) -> None:
        self._name = name
        self._backoff = backoff or BackoffPolicy()
        self._on_change = on_change
        self._state: ConnectionState = "disconnected"
        self._attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    def begin_connect(self) -> None:
        self._transition("connecting")
        self._attempts += 1

    def mark_connected(self) -> None:
        self._transition("connected")
        self._attempts = 0

    def mark_disconnected(self) -> None:
        if self._state == "disconnected":
            return
        self._transition("disconnected")

    def next_delay(self) -> float | None:
        """Backoff before the next connect attempt; None when the policy gives up."""
        return self._backoff.delay(self._attempts + 1)

    def _transition(self, target: ConnectionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"invalid_transition:{self._name}:{self._state}->{target}")
        previous = self._state
        self._state = target
        logger.debug("relay.connection.transition name=%s from=%s to=%s", self._name, previous, target)
        if self._on_change is not None:
            self._on_change(previous, target)
