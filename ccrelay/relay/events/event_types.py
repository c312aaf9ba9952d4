"""Event layer: strongly-typed logical events sequenced by the session store and fanned out."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

SessionStatus = Literal["running", "idle", "compacting"]
BlockKind = Literal["text", "tool_use", "thinking"]
DeltaKind = Literal["block_start", "text_delta", "thinking_delta", "input_json_delta"]
NoticeState = Literal["connected", "disconnected", "stalled", "resumed"]
CancelReason = Literal["timeout", "upstream_cancelled", "upstream_disconnected"]
PermissionBehavior = Literal["allow", "deny"]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class McpServerStatus(BaseModel):
    name: str
    status: str


class SessionSnapshot(BaseModel):
    """Authoritative session aggregate; only the session store replaces it."""

    session_id: str = ""
    model: str = ""
    cwd: str = ""
    tools: list[str] = Field(default_factory=list)
    permission_mode: str = "default"
    agent_version: str = ""
    mcp_servers: list[McpServerStatus] = Field(default_factory=list)
    total_cost_usd: float = 0.0
    num_turns: int = 0
    context_used_percent: float = 0.0
    status: SessionStatus | None = None
    is_compacting: bool = False


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    at: str = Field(default_factory=utc_now_iso)


class SessionInit(_Event):
    type: Literal["session_init"] = "session_init"
    session: SessionSnapshot


class SessionPatch(_Event):
    """Partial snapshot update, shallow-merged into the current snapshot."""

    type: Literal["session_patch"] = "session_patch"
    changes: dict[str, Any] = Field(default_factory=dict)


class MessageComplete(_Event):
    type: Literal["message_complete"] = "message_complete"
    message_id: str = ""
    role: Literal["assistant", "user"] = "assistant"
    model: str = ""
    content: list[dict[str, Any]] = Field(default_factory=list)
    stop_reason: str | None = None
    usage: dict[str, Any] = Field(default_factory=dict)
    parent_tool_use_id: str | None = None
    streamed: bool = False

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks, in block order."""
        return "".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )


class StreamDelta(_Event):
    type: Literal["stream_delta"] = "stream_delta"
    index: int
    kind: DeltaKind
    block_kind: BlockKind
    text: str = ""
    content_block: dict[str, Any] | None = None
    parent_tool_use_id: str | None = None


class ToolProgress(_Event):
    type: Literal["tool_progress"] = "tool_progress"
    tool_use_id: str
    tool_name: str
    elapsed_time_seconds: float = 0.0


class ToolUseSummary(_Event):
    type: Literal["tool_use_summary"] = "tool_use_summary"
    summary: str
    tool_use_ids: list[str] = Field(default_factory=list)


class PermissionRequest(_Event):
    type: Literal["permission_request"] = "permission_request"
    request_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    description: str | None = None
    tool_use_id: str = ""
    agent_id: str | None = None
    expires_at: str | None = None


class PermissionCancelled(_Event):
    type: Literal["permission_cancelled"] = "permission_cancelled"
    request_id: str
    reason: CancelReason


class PermissionResolved(_Event):
    type: Literal["permission_resolved"] = "permission_resolved"
    request_id: str
    behavior: PermissionBehavior
    client_id: str | None = None


class ResultSummary(_Event):
    type: Literal["result_summary"] = "result_summary"
    subtype: str = "success"
    is_error: bool = False
    result: str | None = None
    errors: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    duration_api_ms: float = 0.0
    num_turns: int = 0
    total_cost_usd: float = 0.0
    session_id: str = ""


class StatusChange(_Event):
    type: Literal["status_change"] = "status_change"
    status: SessionStatus | None = None


class ConnectionNotice(_Event):
    type: Literal["connection_notice"] = "connection_notice"
    state: NoticeState
    detail: str | None = None


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    kind: str
    message: str
    raw: str | None = None


class UserMessage(_Event):
    type: Literal["user_message"] = "user_message"
    content: str
    image_count: int = 0
    client_id: str | None = None
    client_msg_id: str | None = None


class OpaqueEvent(_Event):
    """Well-formed upstream frame with a tag the relay does not model."""

    type: Literal["opaque"] = "opaque"
    tag: str
    payload: dict[str, Any] = Field(default_factory=dict)


LogicalEvent = Annotated[
    Union[
        SessionInit,
        SessionPatch,
        MessageComplete,
        StreamDelta,
        ToolProgress,
        ToolUseSummary,
        PermissionRequest,
        PermissionCancelled,
        PermissionResolved,
        ResultSummary,
        StatusChange,
        ConnectionNotice,
        ErrorEvent,
        UserMessage,
        OpaqueEvent,
    ],
    Field(discriminator="type"),
]

LOGICAL_EVENT_ADAPTER: TypeAdapter[LogicalEvent] = TypeAdapter(LogicalEvent)


class SequencedEvent(BaseModel):
    """Logical event bound to its position in the session's total order."""

    model_config = ConfigDict(frozen=True)

    seq: int
    session_id: str
    event: LogicalEvent

    def to_wire(self) -> dict[str, Any]:
        payload = self.event.model_dump(mode="json")
        payload["seq"] = self.seq
        return payload

    @classmethod
    def from_wire(cls, session_id: str, payload: dict[str, Any]) -> "SequencedEvent":
        body = dict(payload)
        seq = int(body.pop("seq"))
        return cls(seq=seq, session_id=session_id, event=LOGICAL_EVENT_ADAPTER.validate_python(body))
