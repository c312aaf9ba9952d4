"""Event layer: decode raw upstream NDJSON lines into logical events or stream fragments."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any, Union

from pydantic import ValidationError

from ccrelay.infra.observability.logger import get_logger
from ccrelay.protocol.upstream import (
    AssistantFrame,
    ControlCancelRequestFrame,
    ControlRequestFrame,
    KeepAliveFrame,
    ResultFrame,
    StreamEventFrame,
    SystemFrame,
    ToolProgressFrame,
    ToolUseSummaryFrame,
    UserFrame,
)
from ccrelay.relay.errors import DecodeError
from ccrelay.relay.events.event_types import (
    McpServerStatus,
    MessageComplete,
    OpaqueEvent,
    PermissionCancelled,
    PermissionRequest,
    ResultSummary,
    SessionInit,
    SessionSnapshot,
    StatusChange,
    ToolProgress,
    ToolUseSummary,
)

logger = get_logger(__name__)

Decoded = Union[
    SessionInit,
    StatusChange,
    MessageComplete,
    ResultSummary,
    PermissionRequest,
    PermissionCancelled,
    ToolProgress,
    ToolUseSummary,
    OpaqueEvent,
    StreamEventFrame,
    KeepAliveFrame,
]

_RAW_EXCERPT_LIMIT = 200


def _excerpt(raw: str) -> str:
    if len(raw) <= _RAW_EXCERPT_LIMIT:
        return raw
    return f"{raw[: _RAW_EXCERPT_LIMIT - 3]}..."


def split_frames(raw: str) -> list[str]:
    """Split one transport message into its non-blank NDJSON lines."""
    return [line.strip() for line in raw.split("\n") if line.strip()]


def _decode_system(payload: dict[str, Any]) -> Decoded:
    frame = SystemFrame.model_validate(payload)
    if frame.subtype == "init":
        return SessionInit(
            session=SessionSnapshot(
                session_id=frame.session_id,
                model=frame.model,
                cwd=frame.cwd,
                tools=list(frame.tools),
                permission_mode=frame.permission_mode,
                agent_version=frame.claude_code_version,
                mcp_servers=[
                    McpServerStatus(name=item.name, status=item.status) for item in frame.mcp_servers
                ],
                status="idle",
            )
        )
    if frame.subtype == "status":
        return StatusChange(status=frame.status)
    return OpaqueEvent(tag=f"system.{frame.subtype}", payload=payload)


def _decode_assistant(payload: dict[str, Any]) -> Decoded:
    frame = AssistantFrame.model_validate(payload)
    return MessageComplete(
        message_id=frame.message.id,
        role="assistant",
        model=frame.message.model,
        content=list(frame.message.content),
        stop_reason=frame.message.stop_reason,
        usage=dict(frame.message.usage),
        parent_tool_use_id=frame.parent_tool_use_id,
    )


def _decode_user(payload: dict[str, Any]) -> Decoded:
    frame = UserFrame.model_validate(payload)
    content = frame.message.content
    blocks = [{"type": "text", "text": content}] if isinstance(content, str) else list(content)
    return MessageComplete(
        role="user",
        content=blocks,
        parent_tool_use_id=frame.parent_tool_use_id,
    )


def _decode_result(payload: dict[str, Any]) -> Decoded:
    frame = ResultFrame.model_validate(payload)
    return ResultSummary(
        subtype=frame.subtype,
        is_error=frame.is_error,
        result=frame.result,
        errors=list(frame.errors),
        duration_ms=frame.duration_ms,
        duration_api_ms=frame.duration_api_ms,
        num_turns=frame.num_turns,
        total_cost_usd=frame.total_cost_usd,
        session_id=frame.session_id,
    )


def _decode_control_request(payload: dict[str, Any]) -> Decoded:
    frame = ControlRequestFrame.model_validate(payload)
    if frame.request.subtype != "can_use_tool":
        return OpaqueEvent(tag=f"control_request.{frame.request.subtype}", payload=payload)
    return PermissionRequest(
        request_id=frame.request_id,
        tool_name=frame.request.tool_name,
        input=dict(frame.request.input),
        description=frame.request.description,
        tool_use_id=frame.request.tool_use_id,
        agent_id=frame.request.agent_id,
    )


def _decode_control_cancel(payload: dict[str, Any]) -> Decoded:
    frame = ControlCancelRequestFrame.model_validate(payload)
    return PermissionCancelled(request_id=frame.request_id, reason="upstream_cancelled")


def _decode_tool_progress(payload: dict[str, Any]) -> Decoded:
    frame = ToolProgressFrame.model_validate(payload)
    return ToolProgress(
        tool_use_id=frame.tool_use_id,
        tool_name=frame.tool_name,
        elapsed_time_seconds=frame.elapsed_time_seconds,
    )


def _decode_tool_use_summary(payload: dict[str, Any]) -> Decoded:
    frame = ToolUseSummaryFrame.model_validate(payload)
    return ToolUseSummary(summary=frame.summary, tool_use_ids=list(frame.tool_use_ids))


_FRAME_DECODERS: dict[str, Callable[[dict[str, Any]], Decoded]] = {
    "system": _decode_system,
    "assistant": _decode_assistant,
    "user": _decode_user,
    "result": _decode_result,
    "stream_event": StreamEventFrame.model_validate,
    "control_request": _decode_control_request,
    "control_cancel_request": _decode_control_cancel,
    "tool_progress": _decode_tool_progress,
    "tool_use_summary": _decode_tool_use_summary,
    "keep_alive": KeepAliveFrame.model_validate,
}


class EventDecoder:
    """Stateless line decoder; every failure is a DecodeError, never a fatal fault."""

    def __init__(self, *, max_frame_bytes: int = 4 * 1024 * 1024) -> None:
        self._max_frame_bytes = max(1024, max_frame_bytes)

    def decode(self, line: str) -> Decoded:
        if len(line.encode("utf-8")) > self._max_frame_bytes:
            raise DecodeError(f"frame_too_large:{self._max_frame_bytes}", raw=_excerpt(line))
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"invalid_json:{exc.msg}", raw=_excerpt(line)) from exc
        if not isinstance(payload, dict):
            raise DecodeError("frame_not_object", raw=_excerpt(line))
        tag = payload.get("type")
        if not isinstance(tag, str) or not tag:
            raise DecodeError("frame_missing_type", raw=_excerpt(line))

        decoder = _FRAME_DECODERS.get(tag)
        if decoder is None:
            logger.debug("relay.decoder.opaque tag=%s", tag)
            return OpaqueEvent(tag=tag, payload=payload)
        try:
            return decoder(payload)
        except ValidationError as exc:
            fields = ",".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
            raise DecodeError(f"invalid_{tag}_frame:{fields}", raw=_excerpt(line)) from exc
