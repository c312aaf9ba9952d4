"""Relay hub: one SessionRelay per logical session id, created on first use."""

from __future__ import annotations

from threading import Lock
from typing import Any

from ccrelay.infra.observability.logger import get_logger
from ccrelay.relay.permissions.policy import PermissionTimeoutPolicy
from ccrelay.relay.runtime.session_relay import RelayOptions, SessionRelay

logger = get_logger(__name__)


class RelayHub:
    def __init__(self, *, options: RelayOptions, permission_policy: PermissionTimeoutPolicy) -> None:
        self._options = options
        self._permission_policy = permission_policy
        self._relays: dict[str, SessionRelay] = {}
        self._lock = Lock()

    def get(self, session_id: str) -> SessionRelay | None:
        with self._lock:
            return self._relays.get(session_id)

    def get_or_create(self, session_id: str) -> SessionRelay:
        """Return the running relay for session_id; must be called on the event loop."""
        with self._lock:
            relay = self._relays.get(session_id)
            if relay is None:
                relay = SessionRelay(
                    session_id=session_id,
                    options=self._options,
                    permission_policy=self._permission_policy,
                )
                self._relays[session_id] = relay
                relay.start()
                logger.info("relay.hub.created session_id=%s total=%s", session_id, len(self._relays))
            return relay

    def describe(self) -> list[dict[str, Any]]:
        with self._lock:
            relays = list(self._relays.values())
        return [relay.describe() for relay in relays]

    async def shutdown(self) -> None:
        with self._lock:
            relays = list(self._relays.values())
            self._relays.clear()
        for relay in relays:
            await relay.stop()
        logger.info("relay.hub.shutdown relays=%s", len(relays))
