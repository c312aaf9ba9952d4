"""API layer: dependency helpers to access shared container from request state."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, WebSocket, status

from ccrelay.core.container import AppContainer
from ccrelay.relay.runtime.session_relay import SessionRelay


def get_container(request: Request) -> AppContainer:
    return request.app.state.container  # type: ignore[return-value]


def get_ws_container(websocket: WebSocket) -> AppContainer:
    return websocket.app.state.container  # type: ignore[return-value]


def get_existing_relay(session_id: str, container: AppContainer = Depends(get_container)) -> SessionRelay:
    relay = container.hub.get(session_id)
    if relay is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="session not found")
    return relay
