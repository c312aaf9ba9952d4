"""Downstream websocket: subscribers receive sequenced events and send commands."""

from __future__ import annotations

import asyncio
from uuid import uuid4

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ccrelay.api.commands import apply_command, rejection_reason
from ccrelay.api.deps import get_ws_container
from ccrelay.core.container import AppContainer
from ccrelay.infra.observability.logger import get_logger
from ccrelay.protocol.messages import (
    CLIENT_MESSAGE_ADAPTER,
    CommandRejectedMessage,
    ResyncRequiredMessage,
    SessionAckMessage,
    SessionSnapshotMessage,
    SessionSubscribeMessage,
)
from ccrelay.relay.errors import RelayError, ResyncRequired
from ccrelay.relay.runtime.fanout import Subscription
from ccrelay.relay.runtime.session_relay import SessionRelay

router = APIRouter(tags=["downstream"])
logger = get_logger(__name__)


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    return f"{loc}: {first.get('msg', 'invalid')}" if loc else str(first.get("msg", "invalid"))


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    """Forward one subscription to the socket until it closes or needs a resync."""
    try:
        try:
            async for event in subscription:
                await websocket.send_json(event.to_wire())
        except ResyncRequired as exc:
            notice = ResyncRequiredMessage(oldest_seq=exc.oldest_seq, current_seq=exc.current_seq)
            await websocket.send_json(notice.model_dump(mode="json"))
    except (WebSocketDisconnect, RuntimeError, OSError) as exc:
        logger.info("relay.browser.send_failed subscriber=%s error=%s", subscription.subscriber_id, exc)


class _BrowserSession:
    def __init__(self, websocket: WebSocket, relay: SessionRelay, client_id: str) -> None:
        self.websocket = websocket
        self.relay = relay
        self.client_id = client_id
        self.subscription: Subscription | None = None
        self.sender: asyncio.Task[None] | None = None

    async def subscribe(self, message: SessionSubscribeMessage) -> None:
        await self.stop_sender()
        if message.client_id:
            self.client_id = message.client_id
        try:
            if message.last_seq < 0:
                view, subscription = self.relay.subscribe_from_snapshot(self.client_id)
                snapshot = SessionSnapshotMessage(seq=view.seq, session=view.session)
                await self.websocket.send_json(snapshot.model_dump(mode="json"))
            else:
                subscription = self.relay.subscribe(self.client_id, message.last_seq)
        except ResyncRequired as exc:
            notice = ResyncRequiredMessage(oldest_seq=exc.oldest_seq, current_seq=exc.current_seq)
            await self.websocket.send_json(notice.model_dump(mode="json"))
            return
        self.subscription = subscription
        self.sender = asyncio.create_task(
            _pump(self.websocket, subscription), name=f"ccrelay-browser-{self.client_id}"
        )

    async def stop_sender(self) -> None:
        if self.subscription is not None:
            self.relay.unsubscribe(self.client_id, self.subscription)
            self.subscription = None
        if self.sender is not None:
            self.sender.cancel()
            try:
                await self.sender
            except asyncio.CancelledError:
                pass
            self.sender = None

    async def reject(self, reason: str, detail: str | None, command: str | None = None) -> None:
        rejected = CommandRejectedMessage(reason=reason, detail=detail, command=command)
        await self.websocket.send_json(rejected.model_dump(mode="json"))


@router.websocket("/ws/browser/{session_id}")
async def browser_socket(
    websocket: WebSocket,
    session_id: str,
    container: AppContainer = Depends(get_ws_container),
) -> None:
    relay = container.hub.get_or_create(session_id)
    await websocket.accept()
    session = _BrowserSession(websocket, relay, client_id=f"browser-{uuid4().hex[:12]}")
    logger.info("relay.browser.connected session_id=%s client_id=%s", session_id, session.client_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = CLIENT_MESSAGE_ADAPTER.validate_json(raw)
            except ValidationError as exc:
                await session.reject("invalid_message", _first_error(exc))
                continue
            if isinstance(message, SessionSubscribeMessage):
                await session.subscribe(message)
                continue
            if isinstance(message, SessionAckMessage):
                relay.acknowledge(session.client_id, message.last_seq)
                continue
            try:
                apply_command(relay, message, client_id=session.client_id)
            except RelayError as exc:
                logger.info(
                    "relay.command.rejected session_id=%s client_id=%s command=%s error=%s",
                    session_id,
                    session.client_id,
                    message.type,
                    exc,
                )
                await session.reject(rejection_reason(exc), str(exc), command=message.type)
    except WebSocketDisconnect:
        logger.info("relay.browser.disconnected session_id=%s client_id=%s", session_id, session.client_id)
    finally:
        await session.stop_sender()
