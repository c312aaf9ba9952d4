"""Upstream websocket: the agent process connects here and speaks NDJSON."""

from __future__ import annotations

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ccrelay.api.deps import get_ws_container
from ccrelay.core.container import AppContainer
from ccrelay.infra.observability.logger import get_logger

router = APIRouter(tags=["upstream"])
logger = get_logger(__name__)


class WebSocketUpstream:
    """Adapts a FastAPI websocket to the relay's UpstreamTransport protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send_text(self, data: str) -> None:
        try:
            await self._websocket.send_text(data)
        except WebSocketDisconnect as exc:
            raise ConnectionError(f"upstream_closed:{exc.code}") from exc

    async def close(self) -> None:
        await self._websocket.close()


@router.websocket("/ws/cli/{session_id}")
async def cli_socket(
    websocket: WebSocket,
    session_id: str,
    container: AppContainer = Depends(get_ws_container),
) -> None:
    relay = container.hub.get_or_create(session_id)
    relay.upstream_connecting()
    await websocket.accept()
    transport = WebSocketUpstream(websocket)
    relay.attach_upstream(transport)
    try:
        while True:
            raw = await websocket.receive_text()
            relay.feed(raw)
    except WebSocketDisconnect as exc:
        logger.info("relay.upstream.closed session_id=%s code=%s", session_id, exc.code)
    finally:
        relay.detach_upstream(transport)
