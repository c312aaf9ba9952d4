"""Pending-request correlator: exactly one downstream answer per upstream permission prompt."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from ccrelay.infra.observability.logger import get_logger
from ccrelay.relay.errors import DuplicateResolution, ProtocolViolation, RequestTimeout, UnknownRequest
from ccrelay.relay.events.event_types import (
    CancelReason,
    LogicalEvent,
    PermissionBehavior,
    PermissionCancelled,
    PermissionRequest,
    PermissionResolved,
)
from ccrelay.relay.permissions.policy import PermissionTimeoutPolicy

logger = get_logger(__name__)

EmitFn = Callable[[LogicalEvent], None]


@dataclass
class PendingRequest:
    request_id: str
    tool_name: str
    input: dict[str, Any]
    created_at: str
    expires_at: str
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass(frozen=True)
class _Outcome:
    state: Literal["resolved", "cancelled"]
    detail: str


@dataclass(frozen=True)
class PermissionResolution:
    """Accepted answer, ready to be written upstream exactly once."""

    request_id: str
    behavior: PermissionBehavior
    updated_input: dict[str, Any]
    message: str | None
    client_id: str | None


class PendingRequestCorrelator:
    """Track open permission prompts by request id and arm a deadline per prompt."""

    def __init__(
        self,
        *,
        policy: PermissionTimeoutPolicy,
        emit: EmitFn | None = None,
        remembered_outcomes: int = 512,
    ) -> None:
        self._policy = policy
        self._emit = emit
        self._pending: dict[str, PendingRequest] = {}
        self._outcomes: OrderedDict[str, _Outcome] = OrderedDict()
        self._remembered_outcomes = max(16, remembered_outcomes)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def open(self, request: PermissionRequest) -> PermissionRequest:
        """Register a prompt and start its deadline; return it stamped with expires_at."""
        if request.request_id in self._pending or request.request_id in self._outcomes:
            raise ProtocolViolation(f"duplicate_permission_request:{request.request_id}")
        timeout = self._policy.timeout_for(request.tool_name)
        expires_at = (datetime.now(timezone.utc) + timedelta(seconds=timeout)).isoformat()
        entry = PendingRequest(
            request_id=request.request_id,
            tool_name=request.tool_name,
            input=dict(request.input),
            created_at=request.at,
            expires_at=expires_at,
        )
        entry.timer = asyncio.get_running_loop().call_later(timeout, self._expire, request.request_id)
        self._pending[request.request_id] = entry
        logger.info(
            "relay.permissions.open request_id=%s tool=%s timeout=%.1fs",
            request.request_id,
            request.tool_name,
            timeout,
        )
        return request.model_copy(update={"expires_at": expires_at})

    def resolve(
        self,
        request_id: str,
        *,
        behavior: PermissionBehavior,
        updated_input: dict[str, Any] | None = None,
        message: str | None = None,
        client_id: str | None = None,
    ) -> PermissionResolution:
        """Accept the first answer for request_id; every later answer is rejected."""
        self.ensure_pending(request_id, client_id=client_id)
        entry = self._pending.pop(request_id)
        if entry.timer is not None:
            entry.timer.cancel()
        self._remember(request_id, _Outcome(state="resolved", detail=client_id or "-"))
        resolution = PermissionResolution(
            request_id=request_id,
            behavior=behavior,
            updated_input=dict(updated_input) if updated_input is not None else dict(entry.input),
            message=message,
            client_id=client_id,
        )
        logger.info(
            "relay.permissions.resolved request_id=%s behavior=%s client_id=%s",
            request_id,
            behavior,
            client_id or "-",
        )
        self._publish(PermissionResolved(request_id=request_id, behavior=behavior, client_id=client_id))
        return resolution

    def ensure_pending(self, request_id: str, *, client_id: str | None = None) -> None:
        """Raise the error a resolve() of request_id would raise, without consuming anything."""
        if request_id in self._pending:
            return
        outcome = self._outcomes.get(request_id)
        if outcome is None:
            logger.warning("relay.permissions.unknown request_id=%s client_id=%s", request_id, client_id or "-")
            raise UnknownRequest(f"unknown_request:{request_id}")
        logger.warning(
            "relay.permissions.rejected request_id=%s state=%s detail=%s client_id=%s",
            request_id,
            outcome.state,
            outcome.detail,
            client_id or "-",
        )
        if outcome.state == "resolved":
            raise DuplicateResolution(f"already_resolved:{request_id}:by={outcome.detail}")
        raise RequestTimeout(f"request_cancelled:{request_id}:reason={outcome.detail}")

    def cancel(self, request_id: str, reason: CancelReason) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            logger.debug("relay.permissions.cancel_ignored request_id=%s reason=%s", request_id, reason)
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        self._remember(request_id, _Outcome(state="cancelled", detail=reason))
        logger.warning(
            "relay.permissions.cancelled request_id=%s tool=%s reason=%s",
            request_id,
            entry.tool_name,
            reason,
        )
        self._publish(PermissionCancelled(request_id=request_id, reason=reason))
        return True

    def cancel_all(self, reason: CancelReason) -> int:
        return sum(1 for request_id in list(self._pending) if self.cancel(request_id, reason))

    def close(self) -> None:
        """Disarm every timer without emitting; used on relay shutdown."""
        for entry in self._pending.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self._pending.clear()

    def _expire(self, request_id: str) -> None:
        self.cancel(request_id, "timeout")

    def _publish(self, event: LogicalEvent) -> None:
        if self._emit is None:
            logger.warning("relay.permissions.unbound event=%s", event.type)
            return
        self._emit(event)

    def _remember(self, request_id: str, outcome: _Outcome) -> None:
        self._outcomes[request_id] = outcome
        while len(self._outcomes) > self._remembered_outcomes:
            self._outcomes.popitem(last=False)
