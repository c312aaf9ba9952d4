"""HTTP API layer: session snapshot and command endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ccrelay.api.commands import apply_command, http_status_for
from ccrelay.api.deps import get_existing_relay
from ccrelay.infra.observability.logger import get_logger
from ccrelay.protocol.messages import CommandResponse, SessionCommand, SnapshotResponse
from ccrelay.relay.errors import RelayError
from ccrelay.relay.runtime.session_relay import SessionRelay

router = APIRouter(prefix="/api/sessions", tags=["sessions"])
logger = get_logger(__name__)


@router.get("/{session_id}/snapshot", response_model=SnapshotResponse)
def get_snapshot(relay: SessionRelay = Depends(get_existing_relay)) -> SnapshotResponse:
    view = relay.snapshot()
    oldest, _ = relay.backlog_bounds()
    return SnapshotResponse(
        session_id=relay.session_id,
        seq=view.seq,
        oldest_seq=oldest,
        upstream=relay.upstream_state.state,
        session=view.session,
    )


@router.post("/{session_id}/commands", response_model=CommandResponse)
async def post_command(
    command: SessionCommand = Body(...),
    client_id: str | None = Query(default=None),
    relay: SessionRelay = Depends(get_existing_relay),
) -> CommandResponse:
    try:
        return apply_command(relay, command, client_id=client_id)
    except RelayError as exc:
        logger.info(
            "relay.command.rejected session_id=%s command=%s error=%s",
            relay.session_id,
            command.type,
            exc,
        )
        raise HTTPException(status_code=http_status_for(exc), detail=str(exc)) from exc
