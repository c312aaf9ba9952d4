"""Stream API layer: SSE endpoint with replay support and heartbeat."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import StreamingResponse

from ccrelay.api.deps import get_container
from ccrelay.core.container import AppContainer
from ccrelay.infra.observability.logger import get_logger
from ccrelay.protocol.messages import ResyncRequiredMessage, SessionSnapshotMessage
from ccrelay.relay.errors import ResyncRequired

router = APIRouter(tags=["stream"])
logger = get_logger(__name__)


def _format_sse(*, event: str, data: dict, event_id: int | None = None) -> str:
    body = json.dumps(data, ensure_ascii=False)
    prefix = f"id: {event_id}\n" if event_id is not None else ""
    return f"{prefix}event: {event}\ndata: {body}\n\n"


def _parse_cursor(query_value: int | None, header_value: str | None) -> int | None:
    if query_value is not None:
        return query_value
    if isinstance(header_value, str):
        try:
            return int(header_value)
        except ValueError:
            return None
    return None


@router.get("/api/stream/{session_id}")
async def stream(
    session_id: str,
    last_event_id: int | None = Query(default=None),
    last_event_id_header: str | None = Header(default=None, alias="Last-Event-ID"),
    container: AppContainer = Depends(get_container),
) -> StreamingResponse:
    relay = container.hub.get_or_create(session_id)
    cursor = _parse_cursor(last_event_id, last_event_id_header)
    subscriber_id = f"sse-{uuid4().hex[:12]}"
    keepalive = container.settings.sse_keepalive_seconds

    async def iterator() -> AsyncIterator[str]:
        try:
            if cursor is None:
                view, subscription = relay.subscribe_from_snapshot(subscriber_id)
                snapshot = SessionSnapshotMessage(seq=view.seq, session=view.session)
                yield _format_sse(event=snapshot.type, data=snapshot.model_dump(mode="json"), event_id=view.seq)
            else:
                subscription = relay.subscribe(subscriber_id, cursor)
        except ResyncRequired as exc:
            notice = ResyncRequiredMessage(oldest_seq=exc.oldest_seq, current_seq=exc.current_seq)
            yield _format_sse(event=notice.type, data=notice.model_dump(mode="json"))
            return
        try:
            while True:
                try:
                    item = await asyncio.wait_for(subscription.next(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                except ResyncRequired as exc:
                    notice = ResyncRequiredMessage(oldest_seq=exc.oldest_seq, current_seq=exc.current_seq)
                    yield _format_sse(event=notice.type, data=notice.model_dump(mode="json"))
                    return
                if item is None:
                    return
                wire = item.to_wire()
                yield _format_sse(event=wire["type"], data=wire, event_id=item.seq)
        finally:
            relay.unsubscribe(subscriber_id, subscription)
            logger.info("relay.sse.closed session_id=%s subscriber=%s", session_id, subscriber_id)

    return StreamingResponse(iterator(), media_type="text/event-stream")
