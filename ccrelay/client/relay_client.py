"""Subscriber client: follows one session over the downstream websocket.

The client remembers the last sequence number it delivered and resubscribes
from it after every reconnect, so the caller sees each event exactly once
in order. When the relay answers with ``resync_required`` the client drops
its cursor and asks for a fresh snapshot instead.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from ccrelay.infra.observability.logger import get_logger
from ccrelay.protocol.messages import (
    CommandRejectedMessage,
    ImagePayload,
    InterruptMessage,
    PermissionResponseMessage,
    SessionAckMessage,
    SessionSnapshotMessage,
    SessionSubscribeMessage,
    UserMessageCommand,
)
from ccrelay.relay.events.event_types import PermissionBehavior, SequencedEvent, SessionSnapshot
from ccrelay.relay.upstream.connection_state import BackoffPolicy, ConnectionStateMachine

logger = get_logger(__name__)

EventHandler = Callable[[SequencedEvent], None]
RejectHandler = Callable[[CommandRejectedMessage], None]


class RelayClient:
    def __init__(
        self,
        url: str,
        *,
        session_id: str,
        client_id: str | None = None,
        backoff: BackoffPolicy | None = None,
        on_event: EventHandler | None = None,
        on_rejected: RejectHandler | None = None,
        ack_every: int = 50,
    ) -> None:
        self.url = url
        self.session_id = session_id
        self.client_id = client_id or f"client-{uuid4().hex[:12]}"
        self.connection = ConnectionStateMachine(name=f"client:{self.client_id}", backoff=backoff)
        self.last_seq = -1
        self.snapshot: SessionSnapshot | None = None
        self.resync_pending = False
        self.duplicates_dropped = 0
        self._on_event = on_event
        self._on_rejected = on_rejected
        self._ack_every = max(1, ack_every)
        self._since_ack = 0
        self._ws: Any = None
        self._stopping = False

    # -- message handling --------------------------------------------------------

    def subscribe_message(self) -> SessionSubscribeMessage:
        return SessionSubscribeMessage(last_seq=self.last_seq, client_id=self.client_id)

    def handle_message(self, payload: dict[str, Any]) -> SequencedEvent | None:
        """Apply one relay message to the client cursor; return the event to deliver, if any."""
        kind = payload.get("type")
        if kind == "resync_required":
            logger.warning(
                "relay.client.resync client_id=%s last_seq=%s oldest=%s current=%s",
                self.client_id,
                self.last_seq,
                payload.get("oldest_seq"),
                payload.get("current_seq"),
            )
            self.last_seq = -1
            self.resync_pending = True
            return None
        if kind == "session_snapshot":
            message = SessionSnapshotMessage.model_validate(payload)
            self.snapshot = message.session
            self.last_seq = message.seq
            return None
        if kind == "command_rejected":
            rejected = CommandRejectedMessage.model_validate(payload)
            logger.info("relay.client.command_rejected reason=%s detail=%s", rejected.reason, rejected.detail)
            if self._on_rejected is not None:
                self._on_rejected(rejected)
            return None
        if "seq" not in payload:
            logger.warning("relay.client.unexpected_message type=%s", kind)
            return None
        try:
            event = SequencedEvent.from_wire(self.session_id, payload)
        except ValidationError as exc:
            logger.warning("relay.client.invalid_event type=%s error=%s", kind, exc)
            return None
        if event.seq <= self.last_seq:
            self.duplicates_dropped += 1
            return None
        self.last_seq = event.seq
        self._since_ack += 1
        if self._on_event is not None:
            self._on_event(event)
        return event

    def ack_due(self) -> bool:
        return self._since_ack >= self._ack_every

    # -- commands ----------------------------------------------------------------

    async def send(self, message: BaseModel) -> None:
        if self._ws is None:
            raise ConnectionError("relay_client_not_connected")
        await self._ws.send(message.model_dump_json())

    async def send_user_message(
        self,
        content: str,
        *,
        images: list[ImagePayload] | None = None,
        client_msg_id: str | None = None,
    ) -> None:
        await self.send(UserMessageCommand(content=content, images=images or [], client_msg_id=client_msg_id))

    async def respond_permission(
        self,
        request_id: str,
        behavior: PermissionBehavior,
        *,
        updated_input: dict[str, Any] | None = None,
        message: str | None = None,
    ) -> None:
        await self.send(
            PermissionResponseMessage(
                request_id=request_id,
                behavior=behavior,
                updated_input=updated_input,
                message=message,
            )
        )

    async def interrupt(self) -> None:
        await self.send(InterruptMessage())

    # -- connection loop -------------------------------------------------------

    async def run(self) -> None:
        """Connect, follow the session and reconnect with backoff until closed."""
        while not self._stopping:
            self.connection.begin_connect()
            try:
                await self._connect_and_follow()
            except (ConnectionClosed, InvalidHandshake, OSError) as exc:
                logger.warning("relay.client.disconnected client_id=%s error=%s", self.client_id, exc)
            finally:
                self._ws = None
                self.connection.mark_disconnected()
            if self._stopping:
                break
            delay = self.connection.next_delay()
            if delay is None:
                logger.error("relay.client.gave_up client_id=%s attempts=%s", self.client_id, self.connection.attempts)
                raise ConnectionError(f"relay_unreachable:{self.url}")
            logger.info("relay.client.reconnect client_id=%s delay=%.1fs", self.client_id, delay)
            await asyncio.sleep(delay)

    async def close(self) -> None:
        self._stopping = True
        if self._ws is not None:
            await self._ws.close()

    async def _connect_and_follow(self) -> None:
        async with websockets.connect(self.url) as ws:
            self._ws = ws
            self.connection.mark_connected()
            logger.info("relay.client.connected client_id=%s last_seq=%s", self.client_id, self.last_seq)
            await self.send(self.subscribe_message())
            async for raw in ws:
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError as exc:
                    logger.warning("relay.client.invalid_json error=%s", exc)
                    continue
                if not isinstance(payload, dict):
                    continue
                self.handle_message(payload)
                if self.resync_pending:
                    self.resync_pending = False
                    await self.send(self.subscribe_message())
                elif self.ack_due():
                    self._since_ack = 0
                    await self.send(SessionAckMessage(last_seq=self.last_seq))
